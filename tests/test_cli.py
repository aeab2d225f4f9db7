"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Iterable, Mapping

import pytest

from stock_ledger import cli, core_logic
from stock_ledger.constants import Permission, TransactionType
from stock_ledger.exceptions import AuthorizationDenied, BusinessRuleViolation, InsufficientStock

from conftest import ADMIN_PASSWORD, ADMIN_USERNAME


WRITE_COMMANDS = {
    "add-product",
    "edit-product",
    "delete-product",
    "add-tag",
    "rename-tag",
    "delete-tag",
    "add-category",
    "rename-category",
    "delete-category",
    "purchase",
    "sale",
    "recount",
    "edit-transaction",
    "delete-transaction",
    "add-user",
    "edit-user",
    "delete-user",
    "update-profile",
    "backup",
    "restore",
}

READ_COMMANDS = {
    "stock",
    "low-stock",
    "dashboard",
    "cardex",
    "transactions",
    "logs",
    "export",
}


def _registered_choices(parser: argparse.ArgumentParser) -> Iterable[str]:
    for action in parser._actions:
        if isinstance(action, argparse._SubParsersAction):
            return action.choices.keys()
    return ()


def _parse(spec_factory, argv, *factory_args):
    parser = argparse.ArgumentParser(prog="cli")
    subparsers = parser.add_subparsers(dest="command")
    spec = spec_factory(subparsers, *factory_args)
    spec.register(subparsers)
    return spec, parser.parse_args(argv)


# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata():
    """build_parser should set user-facing program metadata."""

    parser = cli.build_parser()
    assert isinstance(parser, argparse.ArgumentParser)
    assert parser.prog == "stock-cli"
    assert "stock ledger" in (parser.description or "")


def test_build_parser_reads_credentials_from_environment(monkeypatch):
    """--user and --password fall back to environment variables."""

    monkeypatch.setenv(cli.USER_ENV_VAR, "alice")
    monkeypatch.setenv(cli.PASSWORD_ENV_VAR, "s3cret")

    args = cli.build_parser().parse_args([])

    assert (args.user, args.password) == ("alice", "s3cret")


def test_configure_subcommands_registers_every_command(cli_parser):
    """configure_subcommands should wire all mutating and reporting sub-commands."""

    command_table = cli.configure_subcommands(cli_parser)

    assert set(command_table) == WRITE_COMMANDS | READ_COMMANDS
    assert set(_registered_choices(cli_parser)) == WRITE_COMMANDS | READ_COMMANDS


def test_register_write_commands_returns_command_specs(subparsers_action):
    """register_write_commands should return a mapping of CommandSpec objects."""

    specs = cli.register_write_commands(subparsers_action)
    assert set(specs) == WRITE_COMMANDS
    assert all(isinstance(spec, cli.CommandSpec) for spec in specs.values())
    assert set(subparsers_action.choices) == WRITE_COMMANDS


def test_register_read_commands_returns_command_specs(subparsers_action):
    """register_read_commands should return a mapping of CommandSpec objects."""

    specs = cli.register_read_commands(subparsers_action)
    assert set(specs) == READ_COMMANDS
    assert set(subparsers_action.choices) == READ_COMMANDS


@pytest.mark.parametrize(
    "name, permission",
    [
        ("add-product", Permission.ADD_PRODUCTS),
        ("edit-product", Permission.EDIT_PRODUCTS),
        ("delete-product", Permission.DELETE_PRODUCTS),
        ("add-tag", Permission.EDIT_PRODUCTS),
        ("purchase", Permission.PERFORM_TRANSACTIONS),
        ("sale", Permission.PERFORM_TRANSACTIONS),
        ("recount", Permission.RECOUNT_STOCK),
        ("edit-transaction", Permission.EDIT_TRANSACTIONS),
        ("delete-transaction", Permission.DELETE_TRANSACTIONS),
        ("add-user", Permission.MANAGE_USERS),
        ("backup", Permission.BACKUP_RESTORE),
        ("restore", Permission.BACKUP_RESTORE),
        ("logs", Permission.VIEW_LOGS),
        ("export", Permission.EXPORT_DATA),
        ("update-profile", None),
        ("stock", None),
    ],
)
def test_commands_declare_required_permission(cli_parser, name, permission):
    command_table = cli.configure_subcommands(cli_parser)
    assert command_table[name].permission == permission


# ---------------------------------------------------------------------------
# Command registrations
# ---------------------------------------------------------------------------


def test_register_add_product_command_configures_arguments():
    """register_add_product_command should define the necessary arguments."""

    spec, namespace = _parse(
        cli.register_add_product_command,
        ["add-product", "--name", "Cola", "--category-id", "C1", "--category-id", "C2", "--tag-id", "T1", "--quantity", "12"],
    )

    assert spec.name == "add-product"
    assert namespace.command == "add-product"
    assert namespace.category_ids == ["C1", "C2"]
    assert namespace.tag_ids == ["T1"]
    assert namespace.quantity == 12


def test_register_edit_product_command_defaults_to_no_change():
    _, namespace = _parse(cli.register_edit_product_command, ["edit-product", "--product-id", "P1"])

    assert namespace.name is None
    assert namespace.tag_ids is None
    assert namespace.category_ids is None
    assert namespace.clear_tags is False


@pytest.mark.parametrize("transaction_type", [TransactionType.PURCHASE, TransactionType.SALE])
def test_register_invoice_command_collects_items(transaction_type):
    """Invoice commands accept repeated PRODUCT_ID=QUANTITY items."""

    spec, namespace = _parse(
        cli.register_invoice_command,
        [transaction_type.value, "--invoice", "INV-9", "--item", "P1=3", "--item", "P2=5"],
        transaction_type,
    )

    assert spec.name == transaction_type.value
    assert namespace.transaction_type == transaction_type.value
    assert namespace.items == [core_logic.InvoiceLine("P1", 3), core_logic.InvoiceLine("P2", 5)]


@pytest.mark.parametrize("raw", ["P1", "=3", "P1=three"])
def test_parse_invoice_item_rejects_malformed_values(raw):
    with pytest.raises(argparse.ArgumentTypeError):
        cli.parse_invoice_item(raw)


def test_register_recount_command_requires_notes():
    parser = argparse.ArgumentParser(prog="cli")
    subparsers = parser.add_subparsers(dest="command")
    cli.register_recount_command(subparsers).register(subparsers)

    with pytest.raises(SystemExit):
        parser.parse_args(["recount", "--product-id", "P1", "--quantity", "4"])


def test_register_user_command_edit_requires_user_id():
    _, namespace = _parse(
        cli.register_user_command,
        [
            "edit-user",
            "--user-id",
            "U1",
            "--username",
            "clerk",
            "--permission",
            Permission.VIEW_LOGS.value,
            "--tag-prefix",
            "A-",
        ],
        "edit-user",
    )

    assert namespace.user_id == "U1"
    assert namespace.new_password is None
    assert namespace.permissions == [Permission.VIEW_LOGS.value]
    assert namespace.tag_prefixes == ["A-"]


def test_register_user_command_rejects_unknown_permission():
    parser = argparse.ArgumentParser(prog="cli")
    subparsers = parser.add_subparsers(dest="command")
    cli.register_user_command(subparsers, "add-user").register(subparsers)

    with pytest.raises(SystemExit):
        parser.parse_args(["add-user", "--username", "x", "--new-password", "y", "--permission", "CAN_FLY"])


# ---------------------------------------------------------------------------
# Translation helpers
# ---------------------------------------------------------------------------


def test_translate_invoice_merges_duplicate_lines():
    args = argparse.Namespace(
        transaction_type="sale",
        invoice=None,
        items=[core_logic.InvoiceLine("P1", 2), core_logic.InvoiceLine("P2", 1), core_logic.InvoiceLine("P1", 3)],
    )

    command = cli.translate_invoice(args)

    assert command.transaction_type is TransactionType.SALE
    assert command.invoice_number == ""
    assert command.lines == (core_logic.InvoiceLine("P1", 5), core_logic.InvoiceLine("P2", 1))


def test_translate_recount_returns_command():
    args = argparse.Namespace(product_id="P1", quantity=7, notes="count")
    assert cli.translate_recount(args) == core_logic.RecountCommand("P1", 7, "count")


def test_translate_edit_transaction_returns_command():
    args = argparse.Namespace(transaction_id="TX1", quantity_change=-4, invoice="fix")
    assert cli.translate_edit_transaction(args) == core_logic.EditTransactionCommand("TX1", -4, "fix")


def test_translate_user_for_new_account():
    args = argparse.Namespace(
        username="clerk",
        new_password="pw",
        permissions=[Permission.VIEW_LOGS.value],
        category_ids=["C1"],
        tag_prefixes=[],
    )

    command = cli.translate_user(args)

    assert command.user_id is None
    assert command.password == "pw"
    assert command.allowed_category_ids == frozenset({"C1"})


# ---------------------------------------------------------------------------
# Runtime context and authentication
# ---------------------------------------------------------------------------


def test_load_runtime_context_uses_provided_path(config_file, monkeypatch):
    """load_runtime_context should load settings from the specified config path."""

    sentinel_context = object()

    def fake_loader(path: Path | None) -> object:
        assert path == config_file
        return sentinel_context

    monkeypatch.setattr(core_logic, "load_runtime_context", fake_loader)
    assert cli.load_runtime_context(config_file) is sentinel_context


def test_load_runtime_context_supports_defaults(monkeypatch, tmp_path):
    """load_runtime_context should resolve config.ini from the working directory."""

    config_path = tmp_path / "config.ini"
    config_path.write_text("[Dummy]\nkey=value\n")
    sentinel_context = object()

    def fake_loader(path: Path | None) -> object:
        assert path == config_path
        return sentinel_context

    monkeypatch.setattr(core_logic, "load_runtime_context", fake_loader)
    monkeypatch.chdir(tmp_path)
    assert cli.load_runtime_context() is sentinel_context


def test_authenticate_actor_requires_credentials(memory_context):
    args = argparse.Namespace(user=None, password=None)
    with pytest.raises(AuthorizationDenied):
        cli.authenticate_actor(memory_context, args)


def test_authenticate_actor_returns_user(memory_context):
    args = argparse.Namespace(user=ADMIN_USERNAME, password=ADMIN_PASSWORD)
    assert cli.authenticate_actor(memory_context, args).username == ADMIN_USERNAME


# ---------------------------------------------------------------------------
# Dispatch helpers
# ---------------------------------------------------------------------------


def _recording_spec(name: str, permission=None):
    calls = []

    def execute(context, actor, args):
        calls.append((context, actor, args))
        return 0

    spec = cli.CommandSpec(name, "help", lambda action: action.add_parser(name), execute, permission)
    return spec, calls


def test_dispatch_command_invokes_executor(memory_context, admin):
    """dispatch_command should call the executor associated with the command."""

    spec, calls = _recording_spec("alpha", Permission.VIEW_LOGS)
    args = argparse.Namespace(command="alpha")

    assert cli.dispatch_command(memory_context, admin, args, {"alpha": spec}) == 0
    assert calls == [(memory_context, admin, args)]


def test_dispatch_command_denies_missing_permission(memory_context, admin):
    """The executor is never reached when the actor lacks the permission."""

    clerk = core_logic.save_user(
        memory_context,
        admin,
        core_logic.UserCommand(username="clerk", password="pw", permissions=frozenset()),
    )
    spec, calls = _recording_spec("alpha", Permission.MANAGE_USERS)

    with pytest.raises(AuthorizationDenied):
        cli.dispatch_command(memory_context, clerk, argparse.Namespace(command="alpha"), {"alpha": spec})
    assert calls == []


def test_dispatch_command_handles_unknown_commands(memory_context, admin):
    """dispatch_command should raise a clear error for unknown commands."""

    with pytest.raises(KeyError):
        cli.dispatch_command(memory_context, admin, argparse.Namespace(command="unknown"), {})


def test_build_command_table_detects_duplicate_commands():
    """build_command_table should guard against duplicate command names."""

    first, _ = _recording_spec("alpha")
    second, _ = _recording_spec("alpha")
    with pytest.raises(ValueError):
        cli.build_command_table([first, second])


# ---------------------------------------------------------------------------
# Command execution helpers
# ---------------------------------------------------------------------------


def test_run_invoice_invokes_bll(memory_context, admin, monkeypatch):
    """run_invoice should translate args and delegate to the business logic layer."""

    category = core_logic.create_category(memory_context, admin, "Drinks")
    product = core_logic.create_product(memory_context, admin, "Cola", category_ids=[category.category_id])
    args = argparse.Namespace(
        transaction_type="purchase",
        invoice="INV-1",
        items=[core_logic.InvoiceLine(product.product_id, 4)],
    )
    called = {}

    def fake_post(context, actor, command):
        called["context"] = context
        called["command"] = command
        return []

    monkeypatch.setattr(cli.core_logic, "post_invoice", fake_post)

    assert cli.run_invoice(memory_context, admin, args) == 0
    assert called["context"] is memory_context
    assert called["command"].lines == (core_logic.InvoiceLine(product.product_id, 4),)


def test_run_invoice_checks_product_visibility(memory_context, admin, monkeypatch):
    """Restricted users cannot post against products outside their scope."""

    drinks = core_logic.create_category(memory_context, admin, "Drinks")
    snacks = core_logic.create_category(memory_context, admin, "Snacks")
    chips = core_logic.create_product(memory_context, admin, "Chips", category_ids=[snacks.category_id])
    clerk = core_logic.save_user(
        memory_context,
        admin,
        core_logic.UserCommand(
            username="clerk",
            password="pw",
            permissions=frozenset({Permission.PERFORM_TRANSACTIONS.value}),
            allowed_category_ids=frozenset({drinks.category_id}),
        ),
    )
    monkeypatch.setattr(cli.core_logic, "post_invoice", lambda *_: pytest.fail("should not post"))
    args = argparse.Namespace(transaction_type="sale", invoice="", items=[core_logic.InvoiceLine(chips.product_id, 1)])

    with pytest.raises(AuthorizationDenied):
        cli.run_invoice(memory_context, clerk, args)


def _drinks_clerk(memory_context, admin):
    drinks = core_logic.create_category(memory_context, admin, "Drinks")
    snacks = core_logic.create_category(memory_context, admin, "Snacks")
    clerk = core_logic.save_user(
        memory_context,
        admin,
        core_logic.UserCommand(
            username="clerk",
            password="pw",
            permissions=frozenset({Permission.ADD_PRODUCTS.value, Permission.EDIT_PRODUCTS.value}),
            allowed_category_ids=frozenset({drinks.category_id}),
        ),
    )
    return drinks, snacks, clerk


def test_run_add_product_rejects_category_outside_scope(memory_context, admin):
    """Restricted users cannot file new products under categories they cannot see."""

    drinks, snacks, clerk = _drinks_clerk(memory_context, admin)
    args = argparse.Namespace(name="Chips", tag_ids=[], category_ids=[drinks.category_id, snacks.category_id], quantity=0)

    with pytest.raises(AuthorizationDenied):
        cli.run_add_product(memory_context, clerk, args)
    assert core_logic.list_products(memory_context) == []

    args.category_ids = [drinks.category_id]
    assert cli.run_add_product(memory_context, clerk, args) == 0


def test_run_edit_product_cannot_move_product_out_of_scope(memory_context, admin):
    drinks, snacks, clerk = _drinks_clerk(memory_context, admin)
    cola = core_logic.create_product(memory_context, admin, "Cola", category_ids=[drinks.category_id])
    args = argparse.Namespace(
        product_id=cola.product_id, name=None, tag_ids=None, category_ids=[snacks.category_id], clear_tags=False
    )

    with pytest.raises(AuthorizationDenied):
        cli.run_edit_product(memory_context, clerk, args)
    assert core_logic.get_product(memory_context, cola.product_id).category_ids == frozenset({drinks.category_id})

    args.category_ids = None
    args.name = "Cola Zero"
    assert cli.run_edit_product(memory_context, clerk, args) == 0
    assert core_logic.get_product(memory_context, cola.product_id).name == "Cola Zero"


def test_run_update_profile_uses_global_password(memory_context, admin, monkeypatch):
    called = {}
    monkeypatch.setattr(cli.core_logic, "update_profile", lambda context, actor, command: called.setdefault("command", command))
    args = argparse.Namespace(password=ADMIN_PASSWORD, username=None, new_password="next", picture=None)

    assert cli.run_update_profile(memory_context, admin, args) == 0
    assert called["command"] == core_logic.ProfileCommand(ADMIN_PASSWORD, ADMIN_USERNAME, "next", None)


def test_run_restore_requires_existing_file(memory_context, admin, tmp_path):
    args = argparse.Namespace(input=tmp_path / "missing.xlsx")
    with pytest.raises(FileNotFoundError):
        cli.run_restore(memory_context, admin, args)


def test_run_dashboard_prints_totals(memory_context, admin, capsys):
    assert cli.run_dashboard(memory_context, admin, argparse.Namespace()) == 0
    output = capsys.readouterr().out
    assert "Store: Test Store" in output
    assert "Products: 0" in output


# ---------------------------------------------------------------------------
# Error handling and persistence
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "error, expected",
    [
        (AuthorizationDenied("clerk", Permission.VIEW_LOGS.value), 4),
        (BusinessRuleViolation("invalid"), 2),
        (InsufficientStock("P1", 5, 2), 2),
        (FileNotFoundError("missing"), 3),
        (ValueError("bad value"), 1),
    ],
)
def test_handle_cli_error_returns_exit_code(error: Exception, expected: int, caplog: pytest.LogCaptureFixture):
    """handle_cli_error should convert exceptions into exit codes."""

    caplog.set_level("ERROR")
    exit_code = cli.handle_cli_error(error)
    assert exit_code == expected
    assert caplog.records


def test_handle_cli_error_logs_human_readable_message(caplog: pytest.LogCaptureFixture):
    """handle_cli_error should emit a user-friendly log message."""

    caplog.set_level("ERROR")
    cli.handle_cli_error(InsufficientStock("P1", 5, 2))
    assert any("requested 5, available 2" in record.getMessage() for record in caplog.records)


def test_persist_workbook_saves_changes(runtime_context, monkeypatch):
    """persist_workbook should request the data layer to save the workbook."""

    called = {}
    monkeypatch.setattr(cli.core_logic, "persist_context", lambda context: called.setdefault("context", context))
    cli.persist_workbook(runtime_context)
    assert called["context"] is runtime_context


def test_persist_workbook_handles_read_only_workbooks(runtime_context, monkeypatch):
    """persist_workbook should handle read-only workbook scenarios gracefully."""

    def fake_persist(_: core_logic.RuntimeContext) -> None:
        raise PermissionError("read-only")

    monkeypatch.setattr(cli.core_logic, "persist_context", fake_persist)
    with pytest.raises(RuntimeError, match="read-only"):
        cli.persist_workbook(runtime_context)


# ---------------------------------------------------------------------------
# Program entry point
# ---------------------------------------------------------------------------


def _patch_entry_point(monkeypatch, runtime_context, command: str):
    parser = _stub_parser(command=command)
    command_table = {command: cli.CommandSpec(command, "help", lambda _: parser, lambda *_: 0)}
    monkeypatch.setattr(cli, "build_parser", lambda: parser)
    monkeypatch.setattr(cli, "configure_subcommands", lambda _: command_table)
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: runtime_context)
    monkeypatch.setattr(cli, "authenticate_actor", lambda context, args: "actor")
    return command_table


def test_main_executes_specified_command(monkeypatch, runtime_context):
    """main should execute the command parsed from argv and persist on success."""

    _patch_entry_point(monkeypatch, runtime_context, "stock")
    called = {}

    def fake_dispatch(context, actor, args: argparse.Namespace, table: Mapping[str, cli.CommandSpec]) -> int:
        called["context"] = context
        called["actor"] = actor
        called["args"] = args
        return 0

    monkeypatch.setattr(cli, "dispatch_command", fake_dispatch)
    monkeypatch.setattr(cli, "persist_workbook", lambda ctx: called.setdefault("persisted", ctx))

    assert cli.main(["stock"]) == 0
    assert called["context"] is runtime_context
    assert called["actor"] == "actor"
    assert called["persisted"] is runtime_context
    assert called["args"].command == "stock"


def test_main_handles_bll_errors_without_persisting(monkeypatch, runtime_context):
    """main should surface business rule violations as non-zero exits."""

    _patch_entry_point(monkeypatch, runtime_context, "sale")

    def fake_dispatch(*_: object) -> int:
        raise InsufficientStock("P1", 3, 1)

    monkeypatch.setattr(cli, "dispatch_command", fake_dispatch)
    monkeypatch.setattr(cli, "persist_workbook", lambda _: pytest.fail("should not persist"))

    assert cli.main(["sale"]) == 2


def test_main_rejects_bad_credentials(config_file):
    """A wrong password exits with the authorization code and changes nothing."""

    exit_code = cli.main(
        ["--config", str(config_file), "--user", ADMIN_USERNAME, "--password", "wrong", "add-category", "--name", "X"]
    )
    assert exit_code == 4


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _stub_parser(command: str) -> argparse.ArgumentParser:
    """Create a stub parser that always returns the supplied command."""

    class _Stub(argparse.ArgumentParser):
        def parse_args(self, args: Iterable[str] | None = None, namespace: argparse.Namespace | None = None):  # type: ignore[override]
            return argparse.Namespace(command=command)

    return _Stub(prog="test")
