import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from ticketproto import listing, store
from ticketproto.errors import EXIT_SUCCESS, EXIT_UNEXPECTED, EXIT_VALIDATION_FAILED, NotInitialized, PatchError, TicketError, UsageError
from ticketproto.frontmatter import parse_ticket, render_ticket
from ticketproto.index import TicketIndexEntry, parse_documents
from ticketproto.patch import TicketChangePatch, patch_index_text, patch_ticket_text, summarize_patch
from ticketproto.policy import POLICY_TIERS, resolve_policy_tier
from ticketproto.qa import qa_checklist_missing_sections, transition_qa
from ticketproto.resolve import resolve_ticket
from ticketproto.util import display_id, iso8601, now_utc, read_text, write_text
from ticketproto.validation import validate_repository

logger = logging.getLogger(__name__)


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args)
    try:
        return args.func(args)
    except TicketError as exc:
        return fail(args, exc.to_dict(), exc.message, exc.exit_code)
    except Exception as exc:
        logger.exception("unexpected failure in %s", args.command)
        return fail(args, {"code": "unexpected", "message": str(exc), "details": {}}, str(exc), EXIT_UNEXPECTED)


def _add_output_flags(parser: argparse.ArgumentParser, default: Any) -> None:
    parser.add_argument("--json", dest="json_out", action="store_true", default=default, help="Emit a JSON envelope")
    parser.add_argument("-q", "--quiet", action="store_true", default=default, help="Suppress success output")
    parser.add_argument("-v", "--verbose", action="store_true", default=default, help="Debug logging")


def build_parser():
    p = argparse.ArgumentParser(prog="ticket", description="Repo-native ticket protocol CLI")
    _add_output_flags(p, False)
    # Subcommands accept the same flags; SUPPRESS keeps them from overwriting the global value.
    common = argparse.ArgumentParser(add_help=False)
    _add_output_flags(common, argparse.SUPPRESS)
    sub = p.add_subparsers(dest="command", required=True)

    # init
    sp = sub.add_parser("init", parents=[common], help="Initialize .tickets/ in the current directory")
    sp.set_defaults(func=cmd_init)

    # new
    sp = sub.add_parser("new", parents=[common], help="Create a new ticket")
    sp.add_argument("title")
    sp.add_argument("-p", "--priority", default="p1")
    sp.add_argument("--state", default="backlog")
    sp.add_argument("--label", action="append", default=[])
    sp.add_argument("--qa", action="store_true", help="Append the QA checklist section")
    sp.set_defaults(func=cmd_new)

    # list
    sp = sub.add_parser("list", parents=[common], help="List tickets from the index")
    sp.add_argument("--state")
    sp.add_argument("--label")
    sp.add_argument("--format", choices=["table", "kanban"], default="table")
    sp.set_defaults(func=cmd_list)

    # show
    sp = sub.add_parser("show", parents=[common], help="Show one ticket")
    sp.add_argument("id")
    sp.add_argument("--ci", action="store_true", help="Exact id matching only")
    sp.set_defaults(func=cmd_show)

    # state transitions
    sp = sub.add_parser("move", parents=[common], help="Move a ticket to another state")
    sp.add_argument("id")
    sp.add_argument("state")
    sp.add_argument("--ci", action="store_true", help="Exact id matching only")
    sp.set_defaults(func=cmd_move)

    sp = sub.add_parser("start", parents=[common], help="Move a ticket to in_progress")
    sp.add_argument("id")
    sp.add_argument("--ci", action="store_true", help="Exact id matching only")
    sp.set_defaults(func=cmd_move, state="in_progress")

    sp = sub.add_parser("done", parents=[common], help="Move a ticket to done")
    sp.add_argument("id")
    sp.add_argument("--ci", action="store_true", help="Exact id matching only")
    sp.set_defaults(func=cmd_move, state="done")

    # actors
    for name in ("assign", "reviewer"):
        sp = sub.add_parser(name, parents=[common], help=f"Set or clear the {'assignee' if name == 'assign' else 'reviewer'}")
        sp.add_argument("id")
        sp.add_argument("actor", nargs="?", help="human:<slug> or agent:<slug>")
        sp.add_argument("--clear", action="store_true")
        sp.add_argument("--ci", action="store_true", help="Exact id matching only")
        sp.set_defaults(func=cmd_actor, field="assignee" if name == "assign" else "reviewer")

    # edit
    sp = sub.add_parser("edit", parents=[common], help="Edit title, priority, or labels")
    sp.add_argument("id")
    sp.add_argument("--title")
    sp.add_argument("--priority")
    sp.add_argument(
        "--labels",
        action="append",
        default=[],
        help="'+x' adds, '-x' removes (write --labels=-x), 'a,b' replaces",
    )
    sp.add_argument("--clear-labels", action="store_true")
    sp.add_argument("--ci", action="store_true", help="Exact id matching only")
    sp.set_defaults(func=cmd_edit)

    # qa
    qa = sub.add_parser("qa", help="QA sub-status transitions")
    qa_sub = qa.add_subparsers(dest="qa_command", required=True)
    for name, target, help_text in (
        ("ready", "ready_for_qa", "Hand the ticket to QA"),
        ("fail", "qa_failed", "Record a failed QA pass"),
        ("pass", "qa_passed", "Record a passed QA pass"),
        ("reset", "pending_impl", "Return the ticket to implementation"),
    ):
        sp = qa_sub.add_parser(name, parents=[common], help=help_text)
        sp.add_argument("id")
        if name in ("ready", "pass"):
            sp.add_argument("--env", dest="environment")
        if name == "fail":
            sp.add_argument("--reason")
        sp.add_argument("--ci", action="store_true", help="Exact id matching only")
        sp.set_defaults(func=cmd_qa, qa_target=target)

    # apply-patch
    sp = sub.add_parser("apply-patch", parents=[common], help="Apply a JSON change patch to a ticket and the index")
    sp.add_argument("id")
    group = sp.add_mutually_exclusive_group(required=True)
    group.add_argument("--patch", help="Patch as a JSON object")
    group.add_argument("--patch-file", help="Path to a JSON patch file, or - for stdin")
    sp.add_argument("--ci", action="store_true", help="Exact id matching only")
    sp.set_defaults(func=cmd_apply_patch)

    # validate
    sp = sub.add_parser("validate", parents=[common], help="Validate tickets and the index")
    sp.add_argument("--fix", action="store_true", help="Rebuild a stale index when tickets are otherwise valid")
    sp.add_argument("--ci", action="store_true", help="CI mode; the index is never rewritten")
    sp.add_argument("--policy-tier", help=f"One of: {', '.join(POLICY_TIERS)}")
    sp.set_defaults(func=cmd_validate)

    # rebuild-index
    sp = sub.add_parser("rebuild-index", parents=[common], help="Regenerate .tickets/index.json")
    sp.set_defaults(func=cmd_rebuild_index)

    return p


def configure_logging(args) -> None:
    level = logging.DEBUG if getattr(args, "verbose", False) else logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s", stream=sys.stderr)


# Output


def emit(args, data: Dict[str, Any], text: Optional[str] = None, warnings: Optional[List[str]] = None) -> int:
    if args.json_out:
        envelope = {"ok": True, "data": data, "warnings": warnings or []}
        sys.stdout.write(json.dumps(envelope, indent=2) + "\n")
        return EXIT_SUCCESS
    for warning in warnings or []:
        print(f"WARNING: {warning}", file=sys.stderr)
    if text and not args.quiet:
        print(text)
    return EXIT_SUCCESS


def fail(args, error: Dict[str, Any], message: str, exit_code: int, warnings: Optional[List[str]] = None) -> int:
    if getattr(args, "json_out", False):
        envelope = {"ok": False, "error": error, "warnings": warnings or []}
        sys.stdout.write(json.dumps(envelope, indent=2) + "\n")
    else:
        print(f"error: {message}", file=sys.stderr)
    return exit_code


# Helpers


def _root() -> Path:
    root = store.repo_root()
    if not store.is_initialized(root):
        raise NotInitialized("Ticket system not initialized. Run `ticket init`.")
    return root


def _resolve(root: Path, args) -> TicketIndexEntry:
    return resolve_ticket(store.read_or_recover_index(root), args.id, ci=getattr(args, "ci", False))


def _stamp() -> str:
    return iso8601(now_utc())


def _write_patched(args, patch: TicketChangePatch) -> int:
    root = _root()
    entry = _resolve(root, args)
    filename = Path(entry.path).name
    raw = store.read_ticket(root, entry.path)
    output = patch_ticket_text(raw, patch, filename, entry.id, updated_at=_stamp())
    changed = output != raw
    if changed:
        store.write_ticket(root, entry.path, output)
        store.rebuild_index(root)
    doc = parse_ticket(output, filename, entry.id)
    summary = summarize_patch(patch, from_state=entry.state)
    data = {
        "id": doc.id,
        "display_id": entry.display_id,
        "changed": changed,
        "state": doc.state,
        "priority": doc.priority,
        "title": doc.title,
        "labels": doc.labels,
        "assignee": doc.assignee,
        "reviewer": doc.reviewer,
    }
    text = f"{entry.display_id}: {summary}" if changed else f"{entry.display_id}: unchanged"
    return emit(args, data, text)


# Commands


def cmd_init(args):
    root = store.repo_root()
    created, index = store.init_repository(root)
    return emit(args, {"created": created, "tickets": len(index.tickets)}, "Initialized.")


def cmd_new(args):
    root = _root()
    created = store.create_ticket(
        root,
        args.title,
        state=args.state,
        priority=args.priority,
        labels=args.label,
        created=_stamp(),
        with_qa=args.qa,
    )
    store.rebuild_index(root)
    data = {"id": created.id, "display_id": display_id(created.id), "path": created.path}
    return emit(args, data, f"Created {data['display_id']} ({created.path})")


def cmd_list(args):
    root = _root()
    index = store.read_or_recover_index(root)
    entries = [TicketIndexEntry.from_dict(entry) for entry in index["tickets"]]
    rows = listing.filter_entries(entries, state=args.state, label=args.label)
    if args.json_out:
        return emit(args, {"tickets": [row.to_dict() for row in rows], "count": len(rows)})
    documents, failures = parse_documents(store.read_ticket_files(root))
    for failure in failures:
        logger.warning("skipping QA status: %s", failure.message)
    qa_statuses = {doc.id: doc.qa.status for doc in documents if doc.qa and doc.qa.status}
    render = listing.render_kanban if args.format == "kanban" else listing.render_table
    print(render(rows, qa_statuses))
    return EXIT_SUCCESS


def cmd_show(args):
    root = _root()
    entry = _resolve(root, args)
    raw = store.read_ticket(root, entry.path)
    if not args.json_out:
        sys.stdout.write(raw if raw.endswith("\n") else raw + "\n")
        return EXIT_SUCCESS
    doc = parse_ticket(raw, Path(entry.path).name, entry.id)
    missing = qa_checklist_missing_sections(doc.body)
    data = {
        "ticket": entry.to_dict(),
        "frontmatter": doc.front_matter,
        "qa": {
            "checklist_complete": not missing,
            "missing_sections": missing,
            "latest_decision": doc.qa.status if doc.qa else None,
        },
        "body_md": doc.body,
    }
    return emit(args, data)


def cmd_move(args):
    return _write_patched(args, TicketChangePatch(state=args.state))


def cmd_actor(args):
    if args.clear and args.actor:
        raise UsageError("Pass an actor or --clear, not both")
    if not args.clear and not args.actor:
        raise UsageError(f"Missing actor for {args.field} (expected 'human:<slug>' or 'agent:<slug>')")
    value = None if args.clear else args.actor
    patch = TicketChangePatch(**{args.field: value})
    return _write_patched(args, patch)


def parse_label_args(values: List[str], clear: bool = False) -> Dict[str, Any]:
    """Translate ``--labels`` values into label patch fields.

    ``+x`` adds, ``-x`` removes, anything else is a comma separated replacement
    list. Mixing replacement with add/remove is left for the patch engine to
    reject.
    """
    add: List[str] = []
    remove: List[str] = []
    replace: Optional[List[str]] = None
    for raw in values:
        value = raw.strip()
        if not value:
            continue
        if value[0] in "+-":
            label = value[1:].strip().lower()
            if not label:
                raise UsageError(f"Invalid --labels value: '{value[0]}<label>' requires a non-empty label")
            (add if value[0] == "+" else remove).append(label)
            continue
        replace = (replace or []) + [part.strip() for part in value.split(",") if part.strip()]
    fields: Dict[str, Any] = {}
    if add:
        fields["labels_add"] = add
    if remove:
        fields["labels_remove"] = remove
    if replace is not None:
        fields["labels_replace"] = replace
    if clear:
        fields["clear_labels"] = True
    return fields


def cmd_edit(args):
    patch = TicketChangePatch(
        title=args.title,
        priority=args.priority,
        **parse_label_args(args.labels, clear=args.clear_labels),
    )
    if patch.is_empty():
        raise UsageError("No changes to apply", code="no_changes")
    return _write_patched(args, patch)


def cmd_qa(args):
    root = _root()
    entry = _resolve(root, args)
    filename = Path(entry.path).name
    doc = parse_ticket(store.read_ticket(root, entry.path), filename, entry.id)
    transition_qa(
        doc,
        args.qa_target,
        environment=getattr(args, "environment", None),
        reason=getattr(args, "reason", None),
    )
    doc.front_matter["updated"] = _stamp()
    output = render_ticket(doc)
    parse_ticket(output, filename, entry.id)
    store.write_ticket(root, entry.path, output)
    store.rebuild_index(root)
    data = {"id": entry.id, "display_id": entry.display_id, "qa_status": args.qa_target}
    return emit(args, data, f"Set QA status {args.qa_target} for {entry.display_id}")


def _load_patch(args) -> TicketChangePatch:
    if args.patch is not None:
        raw = args.patch
    elif args.patch_file == "-":
        raw = sys.stdin.read()
    else:
        raw = read_text(Path(args.patch_file))
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise PatchError(f"Patch is not valid JSON: {exc}") from exc
    return TicketChangePatch.from_dict(payload)


def cmd_apply_patch(args):
    root = _root()
    patch = _load_patch(args)
    entry = _resolve(root, args)
    filename = Path(entry.path).name
    stamp = _stamp()

    raw_ticket = store.read_ticket(root, entry.path)
    raw_index = read_text(store.index_path(root))
    new_ticket = patch_ticket_text(raw_ticket, patch, filename, entry.id, updated_at=stamp)
    new_index = patch_index_text(raw_index, entry.id, patch, generated_at=stamp)

    changed = new_ticket != raw_ticket
    if changed:
        store.write_ticket(root, entry.path, new_ticket)
        write_text(store.index_path(root), new_index)
    data = {"id": entry.id, "display_id": entry.display_id, "changed": changed, "patch": patch.to_dict()}
    return emit(args, data, f"{entry.display_id}: {summarize_patch(patch, entry.state) if changed else 'unchanged'}")


def cmd_validate(args):
    if args.ci and args.fix:
        raise UsageError("--fix cannot be combined with --ci")
    root = _root()
    profile = resolve_policy_tier(args.policy_tier, config=store.load_config(root))
    report = validate_repository(store.read_ticket_files(root), store.load_index(root), profile, now=_stamp())

    fixed = False
    if args.fix and report.can_fix_index:
        store.write_index(root, report.expected_index)
        report.mark_index_fixed()
        fixed = True
        logger.info("index rebuilt by validate --fix")

    warnings = [issue.message for issue in report.warnings]
    data = report.to_dict()
    data["fixed"] = fixed
    if not report.ok:
        if not args.json_out:
            for issue in report.issues:
                print(f"{issue.severity.upper()}: {issue.message} ({issue.ticket_path or '-'})", file=sys.stderr)
        error = {"code": "validation_failed", "message": f"Validation failed with {len(report.errors)} error(s)", "details": data}
        return fail(args, error, error["message"], EXIT_VALIDATION_FAILED, warnings)
    text = f"Validation passed ({profile.tier})" + (" - index rebuilt" if fixed else "")
    return emit(args, data, text, warnings)


def cmd_rebuild_index(args):
    root = _root()
    index = store.rebuild_index(root)
    return emit(args, {"tickets": len(index.tickets), "path": str(store.index_path(root).relative_to(root))}, f"Rebuilt index ({len(index.tickets)} tickets)")


if __name__ == "__main__":
    raise SystemExit(main())
