"""Command-line entry points for the stock ledger.

The CLI is the collaborator that the core expects: it authenticates the
acting user, checks the permission each command needs and the user's
product visibility, then translates arguments into the command objects
consumed by the business layer. The workbook is only saved when the
command succeeds.
"""

from __future__ import annotations

import argparse
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import access_filter, core_logic, data_manager, log, reporting
from .constants import Permission, TransactionType
from .exceptions import AuthorizationDenied, InventoryError

USER_ENV_VAR = "STOCK_LEDGER_USER"
PASSWORD_ENV_VAR = "STOCK_LEDGER_PASSWORD"

Executor = Callable[[core_logic.RuntimeContext, data_manager.UserRow, argparse.Namespace], int]


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured, gated, and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Executor
    permission: Optional[Permission] = None


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="stock-cli",
        description="Command-line tools for the stock ledger workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    parser.add_argument(
        "--user",
        default=os.environ.get(USER_ENV_VAR),
        help=f"Username of the acting user (defaults to ${USER_ENV_VAR}).",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get(PASSWORD_ENV_VAR),
        help=f"Password of the acting user (defaults to ${PASSWORD_ENV_VAR}).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def _simple_spec(
    name: str,
    help_text: str,
    execute: Executor,
    permission: Optional[Permission],
    arguments: Callable[[argparse.ArgumentParser], None] = lambda parser: None,
) -> CommandSpec:
    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute, permission=permission)


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as invoices and recounts."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "edit-product": register_edit_product_command(subparsers),
        "delete-product": _simple_spec(
            "delete-product",
            "Delete a product; its transactions are kept.",
            run_delete_product,
            Permission.DELETE_PRODUCTS,
            lambda parser: parser.add_argument("--product-id", required=True),
        ),
        "add-tag": _simple_spec(
            "add-tag",
            "Create a tag.",
            run_add_tag,
            Permission.EDIT_PRODUCTS,
            _tag_arguments,
        ),
        "rename-tag": _simple_spec(
            "rename-tag",
            "Rename a tag or change its colour.",
            run_rename_tag,
            Permission.EDIT_PRODUCTS,
            _rename_tag_arguments,
        ),
        "delete-tag": _simple_spec(
            "delete-tag",
            "Delete a tag and unlink it from products.",
            run_delete_tag,
            Permission.EDIT_PRODUCTS,
            lambda parser: parser.add_argument("--tag-id", required=True),
        ),
        "add-category": _simple_spec(
            "add-category",
            "Create a category.",
            run_add_category,
            Permission.EDIT_PRODUCTS,
            lambda parser: parser.add_argument("--name", required=True),
        ),
        "rename-category": _simple_spec(
            "rename-category",
            "Rename a category.",
            run_rename_category,
            Permission.EDIT_PRODUCTS,
            _rename_category_arguments,
        ),
        "delete-category": _simple_spec(
            "delete-category",
            "Delete a category and unlink it from products and users.",
            run_delete_category,
            Permission.EDIT_PRODUCTS,
            lambda parser: parser.add_argument("--category-id", required=True),
        ),
        "purchase": register_invoice_command(subparsers, TransactionType.PURCHASE),
        "sale": register_invoice_command(subparsers, TransactionType.SALE),
        "recount": register_recount_command(subparsers),
        "edit-transaction": register_edit_transaction_command(subparsers),
        "delete-transaction": _simple_spec(
            "delete-transaction",
            "Delete a transaction and reverse its effect on stock.",
            run_delete_transaction,
            Permission.DELETE_TRANSACTIONS,
            lambda parser: parser.add_argument("--transaction-id", required=True),
        ),
        "add-user": register_user_command(subparsers, "add-user"),
        "edit-user": register_user_command(subparsers, "edit-user"),
        "delete-user": _simple_spec(
            "delete-user",
            "Delete another user account.",
            run_delete_user,
            Permission.MANAGE_USERS,
            lambda parser: parser.add_argument("--user-id", required=True),
        ),
        "update-profile": register_update_profile_command(subparsers),
        "backup": _simple_spec(
            "backup",
            "Write a full store backup to a file.",
            run_backup,
            Permission.BACKUP_RESTORE,
            lambda parser: parser.add_argument("--output", type=Path, required=True),
        ),
        "restore": _simple_spec(
            "restore",
            "Replace the whole store with a backup file.",
            run_restore,
            Permission.BACKUP_RESTORE,
            lambda parser: parser.add_argument("--input", type=Path, required=True),
        ),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "stock": _simple_spec(
            "stock",
            "Display current stock levels.",
            run_stock_report,
            None,
            lambda parser: parser.add_argument("--search", default=None, help="Filter by product, tag, or category name."),
        ),
        "low-stock": _simple_spec("low-stock", "Display low-stock and finished products.", run_low_stock_report, None),
        "dashboard": _simple_spec("dashboard", "Display dashboard totals.", run_dashboard, None),
        "cardex": _simple_spec(
            "cardex",
            "Display the balance trail of one product.",
            run_cardex,
            None,
            lambda parser: parser.add_argument("--product-id", required=True),
        ),
        "transactions": _simple_spec("transactions", "Display the transaction ledger.", run_transactions_report, None),
        "logs": _simple_spec(
            "logs",
            "Display the activity log.",
            run_logs_report,
            Permission.VIEW_LOGS,
            lambda parser: parser.add_argument("--limit", type=int, default=None),
        ),
        "export": _simple_spec(
            "export",
            "Export a report to an xlsx file.",
            run_export,
            Permission.EXPORT_DATA,
            _export_arguments,
        ),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _tag_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--name", required=True)
    parser.add_argument("--color", default=None, help="CSS colour; a random one is picked when omitted.")


def _rename_tag_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--tag-id", required=True)
    _tag_arguments(parser)


def _rename_category_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--category-id", required=True)
    parser.add_argument("--name", required=True)


def _export_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--kind", choices=["products", "low-stock", "transactions"], required=True)
    parser.add_argument("--output", type=Path, required=True)


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Register a new product with an opening quantity."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--category-id", action="append", required=True, dest="category_ids")
        parser.add_argument("--tag-id", action="append", default=[], dest="tag_ids")
        parser.add_argument("--quantity", type=int, default=0, help="Opening quantity (default 0).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name,
        help_text=help_text,
        register=registrar,
        execute=run_add_product,
        permission=Permission.ADD_PRODUCTS,
    )


def register_edit_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``edit-product``."""
    name = "edit-product"
    help_text = "Rename a product or replace its tags and categories."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--name", default=None)
        parser.add_argument("--category-id", action="append", default=None, dest="category_ids")
        parser.add_argument("--tag-id", action="append", default=None, dest="tag_ids")
        parser.add_argument("--clear-tags", action="store_true", help="Remove every tag from the product.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name,
        help_text=help_text,
        register=registrar,
        execute=run_edit_product,
        permission=Permission.EDIT_PRODUCTS,
    )


def parse_invoice_item(raw: str) -> core_logic.InvoiceLine:
    """Parse a ``PRODUCT_ID=QUANTITY`` argument into an invoice line."""
    product_id, separator, quantity_raw = raw.rpartition("=")
    if not separator or not product_id.strip():
        raise argparse.ArgumentTypeError(f"Expected PRODUCT_ID=QUANTITY, got '{raw}'")
    try:
        quantity = int(quantity_raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Quantity must be a whole number in '{raw}'") from exc
    return core_logic.InvoiceLine(product_id=product_id.strip(), quantity=quantity)


def register_invoice_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    transaction_type: TransactionType,
) -> CommandSpec:
    """Register the parser and executor for ``purchase`` or ``sale``."""
    name = transaction_type.value
    help_text = f"Post a {transaction_type.value} invoice."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--invoice", default="", help="Invoice number or customer reference.")
        parser.add_argument(
            "--item",
            action="append",
            required=True,
            type=parse_invoice_item,
            dest="items",
            metavar="PRODUCT_ID=QUANTITY",
        )
        parser.set_defaults(command=name, transaction_type=transaction_type.value)
        return parser

    return CommandSpec(
        name=name,
        help_text=help_text,
        register=registrar,
        execute=run_invoice,
        permission=Permission.PERFORM_TRANSACTIONS,
    )


def register_recount_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``recount``."""
    name = "recount"
    help_text = "Replace a product's quantity with a physical count."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--quantity", type=int, required=True)
        parser.add_argument("--notes", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name,
        help_text=help_text,
        register=registrar,
        execute=run_recount,
        permission=Permission.RECOUNT_STOCK,
    )


def register_edit_transaction_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``edit-transaction``."""
    name = "edit-transaction"
    help_text = "Correct a transaction's quantity change and reference."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", required=True)
        parser.add_argument("--quantity-change", type=int, required=True)
        parser.add_argument("--invoice", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name,
        help_text=help_text,
        register=registrar,
        execute=run_edit_transaction,
        permission=Permission.EDIT_TRANSACTIONS,
    )


def register_user_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    name: str,
) -> CommandSpec:
    """Register the parser and executor for ``add-user`` or ``edit-user``."""
    creating = name == "add-user"
    help_text = "Create a user account." if creating else "Update a user account."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        if not creating:
            parser.add_argument("--user-id", required=True)
        parser.add_argument("--username", required=True)
        parser.add_argument(
            "--new-password",
            required=creating,
            default=None,
            help="Password for the account." if creating else "Leave out to keep the current password.",
        )
        parser.add_argument(
            "--permission",
            action="append",
            default=[],
            dest="permissions",
            choices=[member.value for member in Permission],
        )
        parser.add_argument("--category-id", action="append", default=[], dest="category_ids")
        parser.add_argument("--tag-prefix", action="append", default=[], dest="tag_prefixes")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name,
        help_text=help_text,
        register=registrar,
        execute=run_save_user,
        permission=Permission.MANAGE_USERS,
    )


def register_update_profile_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``update-profile``."""
    name = "update-profile"
    help_text = "Change your own username, password, or picture."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--username", default=None, help="Defaults to the current username.")
        parser.add_argument("--new-password", default=None)
        parser.add_argument("--picture", default=None, help="Profile picture as a data URL.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_profile)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / data_manager.CONFIG_FILE_NAME
    return core_logic.load_runtime_context(target)


def authenticate_actor(context: core_logic.RuntimeContext, args: argparse.Namespace) -> data_manager.UserRow:
    """Resolve the acting user from ``--user`` and ``--password``."""
    if not args.user or args.password is None:
        raise AuthorizationDenied(args.user, reason="--user and --password are required")
    return core_logic.authenticate(context, args.user, args.password)


def dispatch_command(
    context: core_logic.RuntimeContext,
    actor: data_manager.UserRow,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Check the command's permission, then run its executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    access_filter.require_permission(actor, spec.permission)
    return spec.execute(context, actor, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def _require_visible_product(
    context: core_logic.RuntimeContext,
    actor: data_manager.UserRow,
    product_id: str,
) -> data_manager.ProductRow:
    product = core_logic.get_product(context, product_id)
    access_filter.require_product_access(actor, product, core_logic.tags_by_id(context))
    return product


def _require_visible_transaction(
    context: core_logic.RuntimeContext,
    actor: data_manager.UserRow,
    transaction_id: str,
) -> data_manager.TransactionRow:
    """Resolve a transaction the actor may touch; orphans need an unrestricted user."""
    transaction = core_logic.get_transaction(context, transaction_id)
    if access_filter.is_unrestricted(actor):
        return transaction
    product = core_logic.products_by_id(context).get(transaction.product_id)
    if product is None:
        raise AuthorizationDenied(actor.username, reason=f"transaction '{transaction_id}' is outside your scope")
    access_filter.require_product_access(actor, product, core_logic.tags_by_id(context))
    return transaction


def merge_invoice_lines(lines: Sequence[core_logic.InvoiceLine]) -> tuple[core_logic.InvoiceLine, ...]:
    """Combine lines for the same product, keeping first-seen order."""
    totals: Dict[str, int] = {}
    for line in lines:
        totals[line.product_id] = totals.get(line.product_id, 0) + line.quantity
    return tuple(core_logic.InvoiceLine(product_id=product_id, quantity=quantity) for product_id, quantity in totals.items())


def translate_invoice(args: argparse.Namespace) -> core_logic.InvoiceCommand:
    """Translate CLI args into an invoice command object."""
    return core_logic.InvoiceCommand(
        transaction_type=TransactionType(args.transaction_type),
        invoice_number=args.invoice or "",
        lines=merge_invoice_lines(args.items),
    )


def translate_recount(args: argparse.Namespace) -> core_logic.RecountCommand:
    return core_logic.RecountCommand(product_id=args.product_id, new_quantity=args.quantity, notes=args.notes)


def translate_edit_transaction(args: argparse.Namespace) -> core_logic.EditTransactionCommand:
    return core_logic.EditTransactionCommand(
        transaction_id=args.transaction_id,
        quantity_change=args.quantity_change,
        invoice_number=args.invoice,
    )


def translate_user(args: argparse.Namespace) -> core_logic.UserCommand:
    """Translate CLI args into a user command object."""
    return core_logic.UserCommand(
        user_id=getattr(args, "user_id", None),
        username=args.username,
        password=args.new_password,
        permissions=frozenset(args.permissions),
        allowed_category_ids=frozenset(args.category_ids),
        allowed_tag_prefixes=frozenset(args.tag_prefixes),
    )


def run_add_product(context: core_logic.RuntimeContext, actor: data_manager.UserRow, args: argparse.Namespace) -> int:
    """Execute the add-product workflow in the BLL."""
    access_filter.require_links_in_scope(actor, args.tag_ids, args.category_ids, core_logic.tags_by_id(context))
    product = core_logic.create_product(
        context,
        actor,
        args.name,
        tag_ids=args.tag_ids,
        category_ids=args.category_ids,
        initial_quantity=args.quantity,
    )
    print(product.product_id)
    return 0


def run_edit_product(context: core_logic.RuntimeContext, actor: data_manager.UserRow, args: argparse.Namespace) -> int:
    product = _require_visible_product(context, actor, args.product_id)
    tag_ids: Optional[List[str]] = [] if args.clear_tags else args.tag_ids
    access_filter.require_links_in_scope(
        actor,
        product.tag_ids if tag_ids is None else tag_ids,
        product.category_ids if args.category_ids is None else args.category_ids,
        core_logic.tags_by_id(context),
        existing_category_ids=product.category_ids,
    )
    core_logic.update_product(
        context,
        actor,
        args.product_id,
        name=args.name,
        tag_ids=tag_ids,
        category_ids=args.category_ids,
    )
    return 0


def run_delete_product(context: core_logic.RuntimeContext, actor: data_manager.UserRow, args: argparse.Namespace) -> int:
    _require_visible_product(context, actor, args.product_id)
    core_logic.delete_product(context, actor, args.product_id)
    return 0


def run_add_tag(context: core_logic.RuntimeContext, actor: data_manager.UserRow, args: argparse.Namespace) -> int:
    tag = core_logic.create_tag(context, actor, args.name, color=args.color)
    print(tag.tag_id)
    return 0


def run_rename_tag(context: core_logic.RuntimeContext, actor: data_manager.UserRow, args: argparse.Namespace) -> int:
    core_logic.rename_tag(context, actor, args.tag_id, args.name, color=args.color)
    return 0


def run_delete_tag(context: core_logic.RuntimeContext, actor: data_manager.UserRow, args: argparse.Namespace) -> int:
    core_logic.delete_tag(context, actor, args.tag_id)
    return 0


def run_add_category(context: core_logic.RuntimeContext, actor: data_manager.UserRow, args: argparse.Namespace) -> int:
    category = core_logic.create_category(context, actor, args.name)
    print(category.category_id)
    return 0


def run_rename_category(context: core_logic.RuntimeContext, actor: data_manager.UserRow, args: argparse.Namespace) -> int:
    core_logic.rename_category(context, actor, args.category_id, args.name)
    return 0


def run_delete_category(context: core_logic.RuntimeContext, actor: data_manager.UserRow, args: argparse.Namespace) -> int:
    core_logic.delete_category(context, actor, args.category_id)
    return 0


def run_invoice(context: core_logic.RuntimeContext, actor: data_manager.UserRow, args: argparse.Namespace) -> int:
    """Execute the purchase or sale workflow via the BLL."""
    command = translate_invoice(args)
    for line in command.lines:
        _require_visible_product(context, actor, line.product_id)
    posted = core_logic.post_invoice(context, actor, command)
    for transaction in posted:
        print(transaction.transaction_id)
    return 0


def run_recount(context: core_logic.RuntimeContext, actor: data_manager.UserRow, args: argparse.Namespace) -> int:
    """Execute the recount workflow via the BLL."""
    command = translate_recount(args)
    _require_visible_product(context, actor, command.product_id)
    transaction = core_logic.recount_stock(context, actor, command)
    print(transaction.transaction_id)
    return 0


def run_edit_transaction(context: core_logic.RuntimeContext, actor: data_manager.UserRow, args: argparse.Namespace) -> int:
    command = translate_edit_transaction(args)
    _require_visible_transaction(context, actor, command.transaction_id)
    core_logic.edit_transaction(context, actor, command)
    return 0


def run_delete_transaction(context: core_logic.RuntimeContext, actor: data_manager.UserRow, args: argparse.Namespace) -> int:
    _require_visible_transaction(context, actor, args.transaction_id)
    core_logic.delete_transaction(context, actor, args.transaction_id)
    return 0


def run_save_user(context: core_logic.RuntimeContext, actor: data_manager.UserRow, args: argparse.Namespace) -> int:
    """Execute the add-user or edit-user workflow via the BLL."""
    user = core_logic.save_user(context, actor, translate_user(args))
    print(user.user_id)
    return 0


def run_delete_user(context: core_logic.RuntimeContext, actor: data_manager.UserRow, args: argparse.Namespace) -> int:
    core_logic.delete_user(context, actor, args.user_id)
    return 0


def run_update_profile(context: core_logic.RuntimeContext, actor: data_manager.UserRow, args: argparse.Namespace) -> int:
    """Execute the profile update; the global ``--password`` is the current one."""
    command = core_logic.ProfileCommand(
        current_password=args.password,
        username=args.username or actor.username,
        new_password=args.new_password,
        profile_picture=args.picture,
    )
    core_logic.update_profile(context, actor, command)
    return 0


def run_backup(context: core_logic.RuntimeContext, actor: data_manager.UserRow, args: argparse.Namespace) -> int:
    blob = core_logic.export_backup(context, actor)
    destination = Path(args.output).expanduser().resolve()
    destination.parent.mkdir(parents=True, exist_ok=True)
    destination.write_bytes(blob)
    print(destination)
    return 0


def run_restore(context: core_logic.RuntimeContext, actor: data_manager.UserRow, args: argparse.Namespace) -> int:
    source = Path(args.input).expanduser().resolve()
    if not source.exists():
        raise FileNotFoundError(f"Backup file not found: {source}")
    core_logic.restore_backup(context, actor, source.read_bytes())
    print("Store restored. Sign in again before running further commands.")
    return 0


def run_stock_report(context: core_logic.RuntimeContext, actor: data_manager.UserRow, args: argparse.Namespace) -> int:
    """Print the products visible to the actor."""
    products = reporting.visible_products(context, actor)
    if args.search:
        products = reporting.search_products(
            products,
            args.search,
            core_logic.tags_by_id(context),
            core_logic.categories_by_id(context),
        )
    for product in products:
        print(f"{product.product_id}\t{product.name}\t{product.quantity}")
    return 0


def run_low_stock_report(context: core_logic.RuntimeContext, actor: data_manager.UserRow, args: argparse.Namespace) -> int:
    low_stock, finished = reporting.partition_stock(
        reporting.visible_products(context, actor),
        context.settings.low_stock_threshold,
    )
    for label, products in (("LOW", low_stock), ("FINISHED", finished)):
        for product in products:
            print(f"{label}\t{product.product_id}\t{product.name}\t{product.quantity}")
    return 0


def run_dashboard(context: core_logic.RuntimeContext, actor: data_manager.UserRow, args: argparse.Namespace) -> int:
    stats = reporting.dashboard(context, actor)
    print(f"Store: {context.settings.store_name}")
    print(f"Products: {stats.product_count}")
    print(f"Units on hand: {stats.total_quantity}")
    print(f"Low stock: {stats.low_stock_count}")
    print(f"Out of stock: {stats.out_of_stock_count}")
    return 0


def run_cardex(context: core_logic.RuntimeContext, actor: data_manager.UserRow, args: argparse.Namespace) -> int:
    """Print a product's balance trail, newest first."""
    _require_visible_product(context, actor, args.product_id)
    cardex = reporting.product_cardex(context, args.product_id)
    print(f"{cardex.product.name}: opening {cardex.opening_balance}, current {cardex.product.quantity}")
    for entry in reversed(cardex.entries):
        print(
            f"{entry.timestamp_iso}\t{entry.transaction_type}\t{entry.invoice_number}\t"
            f"{entry.balance_before}\t{entry.quantity_change:+d}\t{entry.balance_after}"
        )
    return 0


def run_transactions_report(context: core_logic.RuntimeContext, actor: data_manager.UserRow, args: argparse.Namespace) -> int:
    for row in reporting.transaction_report_rows(context, actor):
        print("\t".join(str(value) for value in row.values()))
    return 0


def run_logs_report(context: core_logic.RuntimeContext, actor: data_manager.UserRow, args: argparse.Namespace) -> int:
    for entry in reporting.activity_log(context, limit=args.limit):
        print(f"{entry.timestamp_iso}\t{entry.username}\t{entry.action}\t{entry.details}")
    return 0


def run_export(context: core_logic.RuntimeContext, actor: data_manager.UserRow, args: argparse.Namespace) -> int:
    """Write the requested report to an xlsx file."""
    if args.kind == "transactions":
        rows = reporting.transaction_report_rows(context, actor)
    else:
        rows = reporting.product_report_rows(context, actor, low_stock_only=args.kind == "low-stock")
    path = reporting.write_report_workbook(rows, args.output, sheet_title=args.kind)
    print(path)
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, AuthorizationDenied):
        log.error("%s", error)
        return 4
    if isinstance(error, InventoryError):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        actor = authenticate_actor(context, args)
        exit_code = dispatch_command(context, actor, args, command_table)
        if exit_code == 0:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
