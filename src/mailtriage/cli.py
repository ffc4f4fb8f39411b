"""Command-line interface for mailtriage.

Provides an argparse-based tool for managing accounts, sampling mailboxes,
inspecting sender and rule groups, running AI judgment and trashing
messages in bulk.  Output formats: table (default) or JSON.

Usage::

    mailtriage add-gmail
    mailtriage fetch <account> --days 30
    mailtriage groups <account> --rules --format json
    mailtriage delete senders <account> news@example.com
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import getpass
import json
import os
import signal
import sys
from collections.abc import Awaitable, Callable, Sequence
from datetime import date
from pathlib import Path
from typing import Any

import structlog

from mailtriage.ai.inference import OllamaJudge
from mailtriage.ai.pipeline import exceeds_thresholds
from mailtriage.app import Services, build_services, configure_logging
from mailtriage.config import get_settings
from mailtriage.domain.errors import MailTriageError, NotConfigured, OperationCancelled
from mailtriage.domain.models import (
    DeleteResult,
    EmailMessage,
    ImapConnectionSettings,
    Progress,
    SamplingResult,
)
from mailtriage.domain.types import FetchMode, ProviderKind, TransportSecurity
from mailtriage.fetch.window import FetchRequest
from mailtriage.grouping.matcher import build_rule_groups
from mailtriage.grouping.rules import parse_rule_text, serialize_rules, validate_rules
from mailtriage.grouping.senders import period_days
from mailtriage.providers.gmail.oauth import authorize_gmail
from mailtriage.providers.imap.session import authorize_imap
from mailtriage.run import RunHandle

logger = structlog.get_logger()

EXIT_ERROR = 1
EXIT_CANCELLED = 130

PASSWORD_ENV = "MAILTRIAGE_IMAP_PASSWORD"


def build_parser() -> argparse.ArgumentParser:
    """Create the argument parser with every subcommand.

    Returns:
        A configured :class:`argparse.ArgumentParser`.
    """
    parser = argparse.ArgumentParser(
        prog="mailtriage", description="Inventory, triage and bulk-clean mailboxes"
    )
    parser.add_argument(
        "--format",
        choices=["table", "json"],
        default="table",
        dest="output_format",
        help="Output format (default: table)",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    accounts = commands.add_parser("accounts", help="List and manage accounts")
    accounts_sub = accounts.add_subparsers(dest="action")
    accounts_sub.add_parser("list", help="List accounts (default)")
    remove = accounts_sub.add_parser("remove", help="Remove an account and all its data")
    remove.add_argument("account")
    rename = accounts_sub.add_parser("rename", help="Change an account's display name")
    rename.add_argument("account")
    rename.add_argument("display_name")
    labels = accounts_sub.add_parser("labels", help="Show or set the labels/folders to fetch")
    labels.add_argument("account")
    labels.add_argument("labels", nargs="*", help="New selection; omit to show")
    export = accounts_sub.add_parser("export", help="Export accounts with credentials")
    export.add_argument("file", type=Path)
    import_ = accounts_sub.add_parser("import", help="Import an account export")
    import_.add_argument("file", type=Path)

    add_imap = commands.add_parser("add-imap", help="Add an IMAP account")
    add_imap.add_argument("--email", required=True)
    add_imap.add_argument("--host", required=True)
    add_imap.add_argument("--port", type=int, default=993)
    add_imap.add_argument("--username", help="Login name (default: --email)")
    add_imap.add_argument(
        "--security",
        choices=[t.value for t in TransportSecurity],
        default=TransportSecurity.SSL.value,
    )
    add_imap.add_argument("--display-name", default="")

    commands.add_parser("add-gmail", help="Authorize a Gmail account in the browser")

    folders = commands.add_parser("folders", help="List an account's labels or folders")
    folders.add_argument("account")

    check = commands.add_parser("check", help="Check that an account's server is reachable")
    check.add_argument("account")

    fetch = commands.add_parser("fetch", help="Fetch a sampling into the cache")
    fetch.add_argument("account")
    fetch.add_argument("--days", type=int, help="Last N days (default: fetch settings)")
    fetch.add_argument("--start", type=date.fromisoformat, help="Range start (YYYY-MM-DD)")
    fetch.add_argument("--end", type=date.fromisoformat, help="Range end (YYYY-MM-DD)")
    fetch.add_argument("--max", type=int, dest="max_results", help="Message cap")

    groups = commands.add_parser("groups", help="Show sender or rule groups of a sampling")
    groups.add_argument("account")
    _add_mode(groups)
    groups.add_argument("--rules", action="store_true", help="Group by rule lines")
    groups.add_argument(
        "--fetch-bodies",
        action="store_true",
        help="Download bodies missing from the cache before rule matching",
    )

    rules = commands.add_parser("rules", help="Edit an account's grouping rules")
    rules_sub = rules.add_subparsers(dest="action", required=True)
    rules_set = rules_sub.add_parser("set", help="Replace the rule text")
    rules_set.add_argument("account")
    rules_set.add_argument("file", type=Path, help="Rule text file; '-' reads stdin")
    rules_validate = rules_sub.add_parser("validate", help="Report regexes that fail to compile")
    rules_validate.add_argument("account")
    rules_show = rules_sub.add_parser("show", help="Print the rule text")
    rules_show.add_argument("account")

    judge = commands.add_parser("judge", help="Run AI judgment over a sampling")
    judge.add_argument("account")
    _add_mode(judge)
    judge.add_argument(
        "--flagged-only", action="store_true", help="Only print messages above the thresholds"
    )

    delete = commands.add_parser("delete", help="Move messages to trash")
    delete_sub = delete.add_subparsers(dest="action", required=True)
    by_senders = delete_sub.add_parser("senders", help="By sender address")
    by_senders.add_argument("account")
    by_senders.add_argument("senders", nargs="+")
    by_subjects = delete_sub.add_parser("subjects", help="By subject text")
    by_subjects.add_argument("account")
    by_subjects.add_argument("subjects", nargs="+")
    by_rules = delete_sub.add_parser("rules", help="By rule line")
    by_rules.add_argument("account")
    by_rules.add_argument(
        "line_indexes", nargs="*", type=int, help="Rule line numbers (default: all)"
    )
    by_ids = delete_sub.add_parser("ids", help="By message id")
    by_ids.add_argument("account")
    by_ids.add_argument("ids", nargs="+")

    settings = commands.add_parser("settings", help="Export or import settings")
    settings_sub = settings.add_subparsers(dest="action", required=True)
    settings_export = settings_sub.add_parser("export")
    settings_export.add_argument("file", type=Path)
    settings_import = settings_sub.add_parser("import")
    settings_import.add_argument("file", type=Path)

    commands.add_parser("models", help="List models installed on the Ollama server")

    clear = commands.add_parser("clear-cache", help="Drop cached samplings or AI judgments")
    clear.add_argument("account", nargs="?", help="Account whose samplings to drop")
    clear.add_argument("--mode", choices=[m.value for m in FetchMode], help="Only this mode")
    clear.add_argument("--ai", action="store_true", help="Clear the AI judgment cache")

    return parser


def _add_mode(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--mode",
        choices=[m.value for m in FetchMode],
        default=FetchMode.DAYS.value,
        help="Which sampling cache to read (default: days)",
    )


# -- Output -------------------------------------------------------------------


def format_table(headers: list[str], rows: list[list[Any]], widths: list[int]) -> str:
    """Render rows as a fixed-width table; long cells are truncated."""
    if not rows:
        return "No results found."

    def truncate(value: Any, width: int) -> str:
        s = "" if value is None else str(value)
        if len(s) > width:
            return s[: width - 3] + "..."
        return s

    header_line = "  ".join(h.ljust(w) for h, w in zip(headers, widths, strict=True))
    lines = [header_line, "-" * len(header_line)]
    for row in rows:
        cells = [truncate(v, w) for v, w in zip(row, widths, strict=True)]
        lines.append("  ".join(c.ljust(w) for c, w in zip(cells, widths, strict=True)))
    return "\n".join(lines)


def _emit(args: argparse.Namespace, data: Any, table: Callable[[], str]) -> None:
    if args.output_format == "json":
        print(json.dumps(data, indent=2, ensure_ascii=False, default=str))
    else:
        print(table())


def _print_progress(progress: Progress) -> None:
    counter = f" [{progress.current}/{progress.total}]" if progress.total else ""
    print(f"\r{progress.message}{counter}", end="", file=sys.stderr, flush=True)


def _score_text(value: tuple[int, int]) -> str:
    low, high = value
    return "-" if low < 0 else (str(low) if low == high else f"{low}-{high}")


def _emit_delete(args: argparse.Namespace, result: DeleteResult) -> None:
    _emit(
        args,
        result.model_dump(),
        lambda: (
            f"Trashed {result.trashed}, excluded {result.excluded}, errors {result.errors}"
        ),
    )


# -- Commands -----------------------------------------------------------------


async def _run_cancellable(
    work: Callable[[RunHandle], Awaitable[Any]],
) -> Any:
    """Run *work* with a handle that SIGINT cancels."""
    handle = RunHandle(on_progress=_print_progress)
    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, handle.cancel)
    try:
        return await work(handle)
    finally:
        with contextlib.suppress(NotImplementedError):
            loop.remove_signal_handler(signal.SIGINT)
        print(file=sys.stderr)


async def _load_sampling(services: Services, account_id: str, mode: str) -> SamplingResult:
    cached = await services.orchestrator.get_cached_result(account_id, FetchMode(mode))
    if cached is None:
        raise NotConfigured("sampling", f"run 'mailtriage fetch {account_id}' first")
    return cached[0]


async def cmd_accounts(services: Services, args: argparse.Namespace) -> int:
    action = args.action or "list"
    store = services.accounts
    if action == "remove":
        await services.require_account(args.account)
        await store.remove_account(args.account)
        print(f"Removed {args.account}")
    elif action == "rename":
        await services.require_account(args.account)
        await store.update_profile(args.account, display_name=args.display_name)
    elif action == "labels":
        await services.require_account(args.account)
        if args.labels:
            await store.save_selected_labels(args.account, args.labels)
        print("\n".join(await store.get_selected_labels(args.account)))
    elif action == "export":
        args.file.write_text(await store.export_accounts(services.settings), encoding="utf-8")
        print(f"Exported to {args.file} (contains credentials; keep it private)")
    elif action == "import":
        payload = args.file.read_text(encoding="utf-8")
        imported, errors = await store.import_accounts(payload, services.settings)
        print(f"Imported {imported} account(s)")
        for error in errors:
            print(f"  error: {error}", file=sys.stderr)
        return EXIT_ERROR if errors else 0
    else:
        listed = await store.list_accounts()
        _emit(
            args,
            [a.model_dump(mode="json") for a in listed],
            lambda: format_table(
                ["Id", "Email", "Name", "Provider"],
                [[a.id, a.email, a.display_name, a.provider_kind] for a in listed],
                [16, 32, 24, 8],
            ),
        )
    return 0


async def cmd_add_imap(services: Services, args: argparse.Namespace) -> int:
    password = os.environ.get(PASSWORD_ENV) or getpass.getpass("IMAP password: ")
    imap = ImapConnectionSettings(
        host=args.host,
        port=args.port,
        username=args.username or args.email,
        secret=password,
        transport_security=TransportSecurity(args.security),
    )
    fetch_settings = await services.settings.get_fetch_settings()
    await authorize_imap(imap, timeout=fetch_settings.request_timeout_seconds or None)
    existing = await services.accounts.find_by_email(args.email)
    if existing is not None:
        await services.accounts.save_imap_settings(existing.id, imap)
        print(f"Updated {existing.id}")
        return 0
    account = await services.accounts.create_account(
        args.email, args.display_name, ProviderKind.IMAP, imap=imap
    )
    print(f"Added {account.id} ({account.email})")
    return 0


async def cmd_add_gmail(services: Services, args: argparse.Namespace) -> int:
    gcp = await services.settings.get_gcp_settings()
    print("Complete the sign-in in your browser...", file=sys.stderr)
    identity = await authorize_gmail(gcp, services.config, services.http)
    existing = await services.accounts.find_by_email(identity.email)
    if existing is not None:
        await services.accounts.save_tokens(existing.id, identity.tokens)
        await services.accounts.update_profile(existing.id, display_name=identity.display_name)
        print(f"Updated {existing.id}")
        return 0
    account = await services.accounts.create_account(
        identity.email, identity.display_name, ProviderKind.GMAIL, tokens=identity.tokens
    )
    print(f"Added {account.id} ({account.email})")
    return 0


async def cmd_folders(services: Services, args: argparse.Namespace) -> int:
    async with services.provider(args.account) as provider:
        labels = await provider.list_folders()
    _emit(
        args,
        [label.model_dump(mode="json") for label in labels],
        lambda: format_table(
            ["Id", "Name", "Type"],
            [[label.id, label.name, label.type] for label in labels],
            [40, 30, 6],
        ),
    )
    return 0


async def cmd_check(services: Services, args: argparse.Namespace) -> int:
    async with services.provider(args.account) as provider:
        ok = await provider.check_connection()
    print("ok" if ok else "unreachable")
    return 0 if ok else EXIT_ERROR


async def cmd_fetch(services: Services, args: argparse.Namespace) -> int:
    use_days = args.start is None and args.end is None
    request = FetchRequest(
        account_id=args.account,
        use_days=use_days,
        days=args.days,
        start_date=args.start,
        end_date=args.end,
        max_results=args.max_results,
    )
    async with services.provider(args.account) as provider:
        result = await _run_cancellable(
            lambda handle: services.orchestrator.fetch(provider, request, handle)
        )
    print(
        f"Fetched {result.total_count} messages from {len(result.from_groups)} senders "
        f"({request.mode} cache)"
    )
    return 0


def _message_row(message: EmailMessage) -> list[Any]:
    judgment = message.ai_judgment
    return [
        message.id,
        message.from_address,
        message.subject,
        judgment.marketing if judgment else "-",
        judgment.spam if judgment else "-",
    ]


async def cmd_groups(services: Services, args: argparse.Namespace) -> int:
    result = await _load_sampling(services, args.account, args.mode)
    if not args.rules:
        groups = result.from_groups
        _emit(
            args,
            [g.model_dump(mode="json", exclude={"messages"}) for g in groups],
            lambda: format_table(
                ["Sender", "Count", "Per day", "Marketing", "Spam", "Latest subject"],
                [
                    [
                        g.from_address,
                        g.count,
                        f"{g.frequency:.2f}",
                        _score_text(g.ai_score_range.marketing),
                        _score_text(g.ai_score_range.spam),
                        g.latest_subject,
                    ]
                    for g in groups
                ],
                [36, 6, 8, 9, 5, 40],
            ),
        )
        return 0

    rules = await services.accounts.get_rules(args.account)
    bodies = dict(result.body_parts or {})
    if args.fetch_bodies:
        async with services.provider(args.account) as provider:
            source = await services.orchestrator.body_source(provider)

            async def read_missing(handle: RunHandle) -> None:
                missing = [m.id for m in result.messages if m.id not in bodies]
                for position, message_id in enumerate(missing, start=1):
                    handle.raise_if_cancelled()
                    bodies[message_id] = await handle.guard(source.body_parts(message_id))
                    handle.report(position, len(missing), "Reading bodies")

            await _run_cancellable(read_missing)
    days = period_days(result.period_start, result.period_end)
    rule_groups = build_rule_groups(result.messages, bodies, rules, days)
    _emit(
        args,
        [g.model_dump(mode="json", exclude={"messages"}) for g in rule_groups],
        lambda: format_table(
            ["Line", "Rule", "Count", "Per day", "Top sender", "Latest subject"],
            [
                [
                    g.rule_line.line_index,
                    g.rule_text,
                    g.count,
                    f"{g.frequency:.2f}",
                    g.ref_from,
                    g.ref_subject,
                ]
                for g in rule_groups
            ],
            [4, 30, 6, 8, 30, 36],
        ),
    )
    return 0


async def cmd_rules(services: Services, args: argparse.Namespace) -> int:
    await services.require_account(args.account)
    if args.action == "set":
        text = sys.stdin.read() if str(args.file) == "-" else args.file.read_text(encoding="utf-8")
        rules = parse_rule_text(text)
        await services.accounts.save_rules(args.account, rules)
        print(f"Saved {len(rules.lines)} rule line(s)")
        problems = validate_rules(rules)
    else:
        rules = await services.accounts.get_rules(args.account)
        if args.action == "show":
            print(rules.rule_text or serialize_rules(rules))
            return 0
        problems = validate_rules(rules)
    for line_index, error in problems:
        print(f"line {line_index}: {error}", file=sys.stderr)
    return EXIT_ERROR if problems else 0


async def cmd_judge(services: Services, args: argparse.Namespace) -> int:
    mode = FetchMode(args.mode)
    result = await _load_sampling(services, args.account, args.mode)
    async with services.provider(args.account) as provider:
        report = await _run_cancellable(
            lambda handle: services.pipeline.run(provider, result.messages, mode, handle)
        )
    ai_settings = await services.settings.get_ai_judgment_settings()
    messages = [
        m.model_copy(update={"ai_judgment": report.judgments.get(m.id, m.ai_judgment)})
        for m in result.messages
    ]
    if args.flagged_only:
        messages = [m for m in messages if exceeds_thresholds(m.ai_judgment, ai_settings)]
    _emit(
        args,
        {
            "cache_hits": report.cache_hits,
            "judged": report.judged,
            "failed": report.failed,
            "messages": [m.model_dump(mode="json") for m in messages],
        },
        lambda: "\n".join(
            [
                format_table(
                    ["Id", "Sender", "Subject", "Mkt", "Spam"],
                    [_message_row(m) for m in messages],
                    [24, 30, 40, 3, 4],
                ),
                f"{report.judged} judged, {report.cache_hits} from cache, "
                f"{report.failed} failed",
            ]
        ),
    )
    return 0


async def cmd_delete(services: Services, args: argparse.Namespace) -> int:
    coordinator = services.deletion
    async with services.provider(args.account) as provider:
        if args.action == "senders":
            result = await _run_cancellable(
                lambda h: coordinator.delete_by_senders(provider, args.senders, h)
            )
        elif args.action == "subjects":
            result = await _run_cancellable(
                lambda h: coordinator.delete_by_subjects(provider, args.subjects, h)
            )
        elif args.action == "rules":
            rules = await services.accounts.get_rules(args.account)
            wanted = set(args.line_indexes)
            lines = [ln for ln in rules.lines if not wanted or ln.line_index in wanted]
            if not lines:
                raise NotConfigured("rules", "no matching rule lines")
            result = await _run_cancellable(
                lambda h: coordinator.delete_by_rules(provider, lines, h)
            )
        else:
            result = await _run_cancellable(
                lambda h: coordinator.delete_by_ids(provider, args.ids, h)
            )
    _emit_delete(args, result)
    return EXIT_ERROR if result.errors else 0


async def cmd_settings(services: Services, args: argparse.Namespace) -> int:
    if args.action == "export":
        args.file.write_text(await services.settings.export_settings(), encoding="utf-8")
        print(f"Exported to {args.file}")
    else:
        kinds = await services.settings.import_settings(args.file.read_text(encoding="utf-8"))
        print(f"Imported: {', '.join(kinds) or 'nothing'}")
    return 0


async def cmd_models(services: Services, args: argparse.Namespace) -> int:
    judge = OllamaJudge(services.http, await services.settings.get_ollama_settings())
    models = await judge.list_models()
    _emit(args, models, lambda: "\n".join(models) or "No models found.")
    return 0


async def cmd_clear_cache(services: Services, args: argparse.Namespace) -> int:
    if args.ai:
        await services.judgments.clear()
        print("Cleared AI judgment cache")
    if args.account:
        await services.require_account(args.account)
        mode = FetchMode(args.mode) if args.mode else None
        await services.sampling_cache.clear(args.account, mode)
        print(f"Cleared {mode or 'all'} sampling cache for {args.account}")
    if not args.ai and not args.account:
        print("Nothing to clear: name an account and/or pass --ai", file=sys.stderr)
        return EXIT_ERROR
    return 0


COMMANDS: dict[str, Callable[[Services, argparse.Namespace], Awaitable[int]]] = {
    "accounts": cmd_accounts,
    "add-imap": cmd_add_imap,
    "add-gmail": cmd_add_gmail,
    "folders": cmd_folders,
    "check": cmd_check,
    "fetch": cmd_fetch,
    "groups": cmd_groups,
    "rules": cmd_rules,
    "judge": cmd_judge,
    "delete": cmd_delete,
    "settings": cmd_settings,
    "models": cmd_models,
    "clear-cache": cmd_clear_cache,
}


async def run_command(args: argparse.Namespace) -> int:
    async with build_services() as services:
        return await COMMANDS[args.command](services, args)


def main(argv: Sequence[str] | None = None) -> int:
    """Parse arguments, run the command and return the exit status."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "fetch" and (args.start is None) != (args.end is None):
        parser.error("--start and --end must be given together")
    config = get_settings()
    configure_logging(production=config.production, level=config.log_level)
    try:
        return asyncio.run(run_command(args))
    except OperationCancelled as exc:
        logger.info("command_cancelled", command=args.command, reason=str(exc))
        print("Cancelled", file=sys.stderr)
        return EXIT_CANCELLED
    except MailTriageError as exc:
        logger.error("command_failed", command=args.command, error=str(exc))
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_ERROR
    except (OSError, ValueError) as exc:
        logger.error("command_input_invalid", command=args.command, error=str(exc))
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
