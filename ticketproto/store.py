"""Filesystem side of the ticket protocol.

The engine modules are pure; this module is the collaborator that reads ticket
files and reads or writes ``index.json`` under a repository root.
"""
from __future__ import annotations

import json
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from ticketproto import templates
from ticketproto.constants import CONFIG_PATH, INDEX_PATH, TEMPLATE_PATH, TICKETS_DIR, TICKETS_ROOT
from ticketproto.errors import IndexOutOfSync, NotInitialized, UsageError
from ticketproto.frontmatter import parse_ticket, render_front_matter, split_front_matter
from ticketproto.index import TicketsIndex, index_from_files, load_index_text, serialize_index, ticket_path
from ticketproto.util import ensure_dir, new_ulid, normalize_labels, read_text, write_text
from ticketproto.workflow import normalize_priority, normalize_state

logger = logging.getLogger(__name__)

# Paths


def repo_root() -> Path:
    return Path.cwd()


def tickets_root(root: Path) -> Path:
    return root / TICKETS_ROOT


def tickets_dir(root: Path) -> Path:
    return root / TICKETS_DIR


def index_path(root: Path) -> Path:
    return root / INDEX_PATH


def config_path(root: Path) -> Path:
    return root / CONFIG_PATH


def template_path(root: Path) -> Path:
    return root / TEMPLATE_PATH


def is_initialized(root: Path) -> bool:
    return tickets_root(root).is_dir()


# Ticket files


def list_ticket_files(root: Path) -> list[str]:
    directory = tickets_dir(root)
    if not directory.is_dir():
        return []
    return sorted(p.name for p in directory.iterdir() if p.is_file() and p.name.endswith(".md"))


def read_ticket_files(root: Path, max_workers: int | None = None) -> list[tuple[str, str]]:
    """Return ``(filename, text)`` pairs, always in filename order."""
    names = list_ticket_files(root)
    directory = tickets_dir(root)
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        texts = list(pool.map(lambda name: read_text(directory / name), names))
    return sorted(zip(names, texts), key=lambda item: item[0])


def read_ticket(root: Path, relative_path: str) -> str:
    return read_text(root / relative_path)


def write_ticket(root: Path, relative_path: str, content: str) -> Path:
    path = root / relative_path
    ensure_dir(path.parent)
    write_text(path, content)
    return path


# Index


def load_index(root: Path) -> dict[str, Any] | None:
    path = index_path(root)
    if not path.is_file():
        return None
    return load_index_text(read_text(path))


def read_index(root: Path) -> dict[str, Any]:
    path = index_path(root)
    if not path.is_file():
        raise NotInitialized("Ticket system not initialized. Run `ticket init`.", details={"path": INDEX_PATH})
    raw = read_text(path)
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise IndexOutOfSync(f"Invalid {INDEX_PATH}; run `ticket rebuild-index` ({exc})") from exc
    if not isinstance(data, dict) or not isinstance(data.get("tickets"), list):
        raise IndexOutOfSync(f"Invalid {INDEX_PATH}; run `ticket rebuild-index`")
    return data


def write_index(root: Path, index: TicketsIndex | dict[str, Any]) -> Path:
    ensure_dir(tickets_root(root))
    path = index_path(root)
    write_text(path, serialize_index(index))
    return path


def build_index(root: Path) -> TicketsIndex:
    return index_from_files(read_ticket_files(root))


def rebuild_index(root: Path) -> TicketsIndex:
    index = build_index(root)
    write_index(root, index)
    logger.info("rebuilt %s with %d tickets", INDEX_PATH, len(index.tickets))
    return index


def read_or_recover_index(root: Path) -> dict[str, Any]:
    """Read the index, rebuilding it when it is missing or unreadable."""
    try:
        return read_index(root)
    except NotInitialized:
        if not is_initialized(root):
            raise
    except IndexOutOfSync:
        logger.warning("%s is unreadable; rebuilding", INDEX_PATH)
    return rebuild_index(root).to_dict()


# Config and creation


def load_config(root: Path) -> dict[str, Any]:
    path = config_path(root)
    if not path.is_file():
        return {}
    try:
        data = yaml.safe_load(read_text(path)) or {}
    except yaml.YAMLError as exc:
        raise UsageError(f"Invalid {CONFIG_PATH}: {exc}", code="invalid_config") from exc
    if not isinstance(data, dict):
        raise UsageError(f"{CONFIG_PATH} must be a mapping", code="invalid_config")
    return data


def read_template(root: Path) -> str:
    path = template_path(root)
    if path.is_file():
        return read_text(path)
    return templates.TICKET_TEMPLATE


@dataclass
class CreatedTicket:
    id: str
    path: str


def create_ticket(
    root: Path,
    title: str,
    state: str = "backlog",
    priority: str = "p1",
    labels: list[str] | None = None,
    created: str | None = None,
    with_qa: bool = False,
) -> CreatedTicket:
    title = title.strip()
    if not title:
        raise UsageError("Ticket title must be non-empty", code="invalid_title")
    state = normalize_state(state)
    priority = normalize_priority(priority)

    ticket_id = new_ulid()
    filename = f"{ticket_id}.md"
    rendered = templates.render_template(
        read_template(root),
        {"id": ticket_id, "title": json.dumps(title), "state": state, "priority": priority},
    )
    front, body = split_front_matter(rendered, TEMPLATE_PATH)
    front.update({"id": ticket_id, "title": title, "state": state, "priority": priority})
    front["labels"] = normalize_labels(labels or [])
    if created:
        front["created"] = created
    if with_qa:
        body = body.rstrip("\n") + "\n" + templates.QA_SECTION_TEMPLATE
    content = render_front_matter(front, body)
    parse_ticket(content, filename, ticket_id)

    relative = ticket_path(filename)
    write_ticket(root, relative, content)
    logger.info("created %s", relative)
    return CreatedTicket(id=ticket_id, path=relative)


def init_repository(root: Path) -> tuple[list[str], TicketsIndex]:
    ensure_dir(tickets_dir(root))
    created: list[str] = []
    for path, contents, label in (
        (config_path(root), templates.DEFAULT_CONFIG, CONFIG_PATH),
        (template_path(root), templates.TICKET_TEMPLATE, TEMPLATE_PATH),
    ):
        if not path.exists():
            write_text(path, contents)
            created.append(label)
    return created, rebuild_index(root)
