"""
CLI interface for orcs stores.

Usage:
    orcs upload brief.txt
    orcs tag create entity "Acme Corp" --ref brief_<uuid>.card.txt --alias Acme
    orcs index show
"""

import atexit
import json
import os
from contextlib import contextmanager
from dataclasses import asdict, is_dataclass
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .analysis import AliasPolicy
from .api import Orcs
from .errors import OrcsError
from .logging_config import configure_quiet_mode, enable_debug_mode
from .merge import MergePreview
from .types import TAG_TYPES, Direction, EntityLink, InsertConnection, InsertTag


# Quiet by default; ORCS_VERBOSE=1 turns on debug logging
if os.environ.get("ORCS_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_store_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _get_json_output() -> bool:
    return _json_output


def _store_callback(value: Optional[Path]):
    global _store_override
    if value is not None:
        _store_override = value


def _get_store_override() -> Optional[Path]:
    return _store_override


app = typer.Typer(
    name="orcs",
    help="Card and tag store for document annotation.",
    no_args_is_help=True,
    rich_markup_mode=None,
)

card_app = typer.Typer(name="card", help="Inspect and edit one card.", rich_markup_mode=None)
tag_app = typer.Typer(name="tag", help="Create, edit, delete and merge tags.", rich_markup_mode=None)
index_app = typer.Typer(name="index", help="Master index and garbage collection.", rich_markup_mode=None)
app.add_typer(card_app)
app.add_typer(tag_app)
app.add_typer(index_app)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s",
        envvar="ORCS_STORE_PATH",
        help="Path to the store directory",
        callback=_store_callback,
        is_eager=True,
    )] = None,
):
    """Card and tag store for document annotation."""


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def _get_orcs() -> Orcs:
    """Open the store for one command. No background index build."""
    try:
        store = Orcs(_get_store_override(), auto_build=False)
    except (OSError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    atexit.register(store.close)
    return store


@contextmanager
def _errors():
    """Turn orcs errors into a one-line message and exit code 1."""
    try:
        yield
    except OrcsError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


def _to_jsonable(value):
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if is_dataclass(value):
        return asdict(value)
    if isinstance(value, list):
        return [_to_jsonable(v) for v in value]
    return value


def _emit(value, text: str) -> None:
    if _get_json_output():
        typer.echo(json.dumps(_to_jsonable(value), indent=2, default=str))
    else:
        typer.echo(text)


def _parse_pairs(pairs: Optional[list[str]]) -> dict[str, str]:
    """Parse key=value options to a dict."""
    parsed: dict[str, str] = {}
    for pair in pairs or []:
        if "=" not in pair:
            typer.echo(f"Error: Invalid format '{pair}'. Use key=value", err=True)
            raise typer.Exit(1)
        k, v = pair.split("=", 1)
        parsed[k.strip()] = v.strip()
    return parsed


def _parse_links(links: Optional[list[str]]) -> list[EntityLink]:
    """Parse ``entity-id`` or ``entity-id:direction`` options."""
    parsed = []
    for link in links or []:
        entity_id, _, direction = link.partition(":")
        if direction and not direction.isdigit():
            typer.echo(f"Error: Invalid direction in '{link}'", err=True)
            raise typer.Exit(1)
        parsed.append(EntityLink(entity_id, int(direction) if direction else int(Direction.FORWARD)))
    return parsed


def _tag_line(tag) -> str:
    refs = len(tag.references)
    return f"{tag.id}  {tag.type:<12} {tag.name}  ({refs} ref{'s' if refs != 1 else ''})"


def _card_line(card) -> str:
    return f"{card.uuid}  {card.filename}  <- {card.source_file}"


# -----------------------------------------------------------------------------
# Documents
# -----------------------------------------------------------------------------

@app.command()
def upload(
    file: Annotated[Path, typer.Argument(help="A .txt or .csv file to add", exists=True, dir_okay=False)],
):
    """Copy a source file into the store and create its card."""
    store = _get_orcs()
    with _errors():
        card = store.upload_file(file)
    _emit(card, _card_line(card))


@app.command()
def cards():
    """List cards."""
    store = _get_orcs()
    items = store.list_cards()
    _emit(items, "\n".join(_card_line(c) for c in items) or "No cards.")


@card_app.command("show")
def card_show(
    card_id: Annotated[str, typer.Argument(help="Card uuid, card filename or source filename")],
):
    """Print a card's regions."""
    store = _get_orcs()
    with _errors():
        card = store.get_card(card_id)
    lines = [_card_line(card), "", "Tag index:"]
    lines.extend(f"  {e}" for e in card.tag_index or ["(empty)"])
    lines += ["", card.original]
    if card.user_added:
        lines += ["", "User added:", card.user_added]
    _emit(card, "\n".join(lines))


@card_app.command("append")
def card_append(
    card_id: Annotated[str, typer.Argument(help="Card uuid or filename")],
    text: Annotated[str, typer.Argument(help="Text to append to the user-added block")],
):
    """Append analyst text to a card."""
    store = _get_orcs()
    with _errors():
        uuid = store.append_user_text(card_id, text)
    _emit({"uuid": uuid}, uuid)


@card_app.command("clear")
def card_clear(
    card_id: Annotated[str, typer.Argument(help="Card uuid or filename")],
):
    """Empty a card's user-added block."""
    store = _get_orcs()
    with _errors():
        uuid = store.clear_user_added_text(card_id)
    _emit({"uuid": uuid}, uuid)


@card_app.command("verify")
def card_verify(
    card_id: Annotated[str, typer.Argument(help="Card uuid or filename")],
):
    """Compare a card's original content with its source file."""
    store = _get_orcs()
    with _errors():
        report = store.verify_integrity(card_id)
    if report.valid:
        text = f"OK: card matches {report.source_file}"
    else:
        text = f"MISMATCH with {report.source_file}: {', '.join(report.missing_tokens)}"
    _emit(report, text)
    if not report.valid:
        raise typer.Exit(1)


@card_app.command("restore")
def card_restore(
    card_id: Annotated[str, typer.Argument(help="Card uuid or filename")],
):
    """Rebuild a card's original content from its source. Inline tags are removed."""
    store = _get_orcs()
    result = store.restore_original_content(card_id)
    _emit(result, result.message)
    if not result.success:
        raise typer.Exit(1)


@card_app.command("delete")
def card_delete(
    name: Annotated[str, typer.Argument(help="Source or card filename in raw/")],
):
    """Delete a document: the source and its card together."""
    store = _get_orcs()
    result = store.delete_document(name)
    if not result.success:
        typer.echo(f"Error: file not found: {name}", err=True)
        raise typer.Exit(1)
    _emit(result, "\n".join(f"Deleted {Path(p).name}" for p in result.deleted_paths))


# -----------------------------------------------------------------------------
# Tags
# -----------------------------------------------------------------------------

RefOption = Annotated[Optional[list[str]], typer.Option(
    "--ref", "-r", help="Card filename the tag appears in (repeatable)"
)]
AliasOption = Annotated[Optional[list[str]], typer.Option(
    "--alias", "-a", help="Additional search term (repeatable)"
)]
KvOption = Annotated[Optional[list[str]], typer.Option(
    "--kv", help="Metadata as key=value (repeatable)"
)]
LinkOption = Annotated[Optional[list[str]], typer.Option(
    "--link", help="Connected entity as id or id:direction (relationship tags)"
)]


@tag_app.command("create")
def tag_create(
    tag_type: Annotated[str, typer.Argument(help=f"One of: {', '.join(TAG_TYPES)}")],
    name: Annotated[str, typer.Argument(help="Tag name (also the primary search term)")],
    ref: RefOption = None,
    alias: AliasOption = None,
    kv: KvOption = None,
    description: Annotated[str, typer.Option("--description", "-d")] = "",
    entity_type: Annotated[Optional[str], typer.Option("--entity-type")] = None,
    pair_key: Annotated[Optional[str], typer.Option("--pair-key")] = None,
    pair_value: Annotated[Optional[str], typer.Option("--pair-value")] = None,
    ui_type: Annotated[Optional[str], typer.Option("--ui-type", help="label or data")] = None,
    data_type: Annotated[Optional[str], typer.Option("--data-type")] = None,
    link: LinkOption = None,
):
    """Create a tag and mark it in every referenced card."""
    store = _get_orcs()
    insert = InsertTag(
        type=tag_type,
        name=name,
        references=list(ref or []),
        aliases=list(alias or []),
        key_value_pairs=_parse_pairs(kv),
        description=description,
        entity_type=entity_type,
        pair_key=pair_key,
        pair_value=pair_value,
        ui_type=ui_type,
        data_type=data_type,
        connected_entities=_parse_links(link),
    )
    with _errors():
        tag = store.create_tag(insert)
    _emit(tag, _tag_line(tag))


@tag_app.command("list")
def tag_list(
    tag_type: Annotated[Optional[str], typer.Option("--type", "-t", help="Only this tag type")] = None,
):
    """List tags."""
    store = _get_orcs()
    with _errors():
        tags = store.list_tags(tag_type)
    _emit(tags, "\n".join(_tag_line(t) for t in tags) or "No tags.")


@tag_app.command("show")
def tag_show(
    tag_id: Annotated[str, typer.Argument(help="Tag id")],
):
    """Show one tag."""
    store = _get_orcs()
    tag = store.get_tag(tag_id)
    if tag is None:
        typer.echo(f"Error: tag not found: {tag_id}", err=True)
        raise typer.Exit(1)
    lines = [_tag_line(tag)]
    if tag.entity_type:
        lines.append(f"entity type: {tag.entity_type}")
    if tag.aliases:
        lines.append(f"aliases: {', '.join(tag.aliases)}")
    lines.append(f"references: {', '.join(tag.references)}")
    for k, v in tag.key_value_pairs.items():
        lines.append(f"{k}: {v}")
    if tag.description:
        lines += ["", tag.description]
    _emit(tag, "\n".join(lines))


@tag_app.command("update")
def tag_update(
    tag_id: Annotated[str, typer.Argument(help="Tag id")],
    name: Annotated[Optional[str], typer.Option("--name", "-n")] = None,
    alias: Annotated[Optional[list[str]], typer.Option(
        "--alias", "-a", help="Replace aliases (repeatable)"
    )] = None,
    add_ref: Annotated[Optional[list[str]], typer.Option(
        "--add-ref", help="Add a card reference and mark it (repeatable)"
    )] = None,
    kv: KvOption = None,
    description: Annotated[Optional[str], typer.Option("--description", "-d")] = None,
    entity_type: Annotated[Optional[str], typer.Option("--entity-type")] = None,
):
    """Edit a tag. Renaming moves its file; new references are marked."""
    store = _get_orcs()
    changes: dict = {}
    if name is not None:
        changes["name"] = name
    if alias:
        changes["aliases"] = list(alias)
    if kv:
        changes["key_value_pairs"] = _parse_pairs(kv)
    if description is not None:
        changes["description"] = description
    if entity_type is not None:
        changes["entity_type"] = entity_type
    with _errors():
        if add_ref:
            current = store.tags.require(tag_id)
            changes["references"] = current.references + list(add_ref)
        tag = store.update_tag(tag_id, **changes)
    _emit(tag, _tag_line(tag))


@tag_app.command("delete")
def tag_delete(
    tag_id: Annotated[str, typer.Argument(help="Tag id")],
    dry_run: Annotated[bool, typer.Option("--dry-run", help="Only report what would change")] = False,
):
    """Strip a tag from every card and delete it."""
    store = _get_orcs()
    if dry_run:
        with _errors():
            preview = store.preview_delete_tag(tag_id)
        _emit(preview, (
            f"Would strip {preview.marker_count} markers from {len(preview.affected_cards)} cards; "
            f"{preview.connection_count} connections reference this tag"
        ))
        return
    if not store.delete_tag(tag_id):
        typer.echo(f"Error: tag not found: {tag_id}", err=True)
        raise typer.Exit(1)
    _emit({"deleted": tag_id}, f"Deleted {tag_id}")


@tag_app.command("merge")
def tag_merge(
    master_id: Annotated[str, typer.Argument(help="Tag that absorbs the others")],
    merge_ids: Annotated[list[str], typer.Argument(help="Tags to merge into the master")],
    dry_run: Annotated[bool, typer.Option("--dry-run", help="Only report what would change")] = False,
):
    """Merge tags into a master tag."""
    store = _get_orcs()
    with _errors():
        result = store.merge_tags(master_id, merge_ids, dry_run=dry_run)
    if isinstance(result, MergePreview):
        _emit(result, (
            f"Would merge {len(result.merge_ids)} tags into {result.master_id}: "
            f"{len(result.references)} references, {result.connections_rewritten} connections rewritten, "
            f"{result.relationships_rewritten} relationships relinked"
        ))
    else:
        _emit(result, _tag_line(result))


# -----------------------------------------------------------------------------
# Connections
# -----------------------------------------------------------------------------

@app.command()
def connect(
    source: Annotated[str, typer.Argument(help="Source entity tag id")],
    target: Annotated[str, typer.Argument(help="Target entity tag id")],
    relationship: Annotated[Optional[str], typer.Option(
        "--relationship", "-r", help="Relationship tag id"
    )] = None,
    attribute: Annotated[Optional[list[str]], typer.Option(
        "--attribute", help="Attribute tag id (repeatable)"
    )] = None,
    direction: Annotated[int, typer.Option(
        "--direction", help="0 none, 1 forward, 2 backward, 3 both"
    )] = int(Direction.FORWARD),
    strength: Annotated[float, typer.Option("--strength", help="0.0 to 1.0")] = 1.0,
    notes: Annotated[str, typer.Option("--notes")] = "",
):
    """Create an explicit connection between two entity tags."""
    store = _get_orcs()
    with _errors():
        conn = store.create_connection(InsertConnection(
            source_tag_id=source,
            target_tag_id=target,
            relationship_tag_id=relationship,
            attribute_tag_ids=list(attribute or []),
            direction=direction,
            strength=strength,
            notes=notes,
        ))
    _emit(conn, conn.id)


@app.command()
def connections(
    tag: Annotated[Optional[str], typer.Option("--tag", "-t", help="Only connections touching this tag")] = None,
):
    """List explicit connections."""
    store = _get_orcs()
    items = store.list_connections(tag)
    lines = [
        f"{c.id}  {c.source_tag_id} -> {c.target_tag_id}  dir={c.direction} strength={c.strength}"
        for c in items
    ]
    _emit(items, "\n".join(lines) or "No connections.")


@app.command()
def disconnect(
    conn_id: Annotated[str, typer.Argument(help="Connection id")],
):
    """Delete a connection."""
    store = _get_orcs()
    if not store.delete_connection(conn_id):
        typer.echo(f"Error: connection not found: {conn_id}", err=True)
        raise typer.Exit(1)
    _emit({"deleted": conn_id}, f"Deleted {conn_id}")


# -----------------------------------------------------------------------------
# Index
# -----------------------------------------------------------------------------

def _stats_text(stats) -> str:
    return "\n".join(f"{k}: {v}" for k, v in asdict(stats).items())


@index_app.command("show")
def index_show():
    """Show index statistics and inconsistencies."""
    store = _get_orcs()
    snapshot = store.get_index()
    lines = [f"version: {snapshot.version}", f"updated: {snapshot.last_updated}", _stats_text(snapshot.stats)]
    for item in snapshot.inconsistencies:
        lines.append(f"  {item.kind}: {item.subject} ({item.detail})")
    _emit(snapshot, "\n".join(lines))


@index_app.command("build")
def index_build():
    """Rebuild the index from the flat files."""
    store = _get_orcs()
    snapshot, _ = store.reindex()
    _emit(snapshot.stats, _stats_text(snapshot.stats))


@index_app.command("gc")
def index_gc(
    dry_run: Annotated[bool, typer.Option("--dry-run", help="Only report what would change")] = False,
):
    """Remove tag references to cards that no longer exist."""
    store = _get_orcs()
    _, report = store.reindex(gc=True, dry_run=dry_run)
    verb = "Would remove" if dry_run else "Removed"
    lines = [
        f"{verb} {report.orphaned_references} orphaned references "
        f"({report.tags_rewritten} tags rewritten, {report.tags_deleted} deleted)"
    ]
    lines.extend(f"  {d.subject}: {d.reference}" for d in report.details)
    _emit(report, "\n".join(lines))


@index_app.command("broken")
def index_broken():
    """List connections whose endpoints are not entity tags."""
    store = _get_orcs()
    broken = store.broken_connections()
    lines = [f"{b.connection_id}  {b.reason}: {b.details}" for b in broken]
    _emit(broken, "\n".join(lines) or "No broken connections.")


# -----------------------------------------------------------------------------
# Analysis
# -----------------------------------------------------------------------------

@app.command()
def analyze(
    tag_id: Annotated[str, typer.Argument(help="Tag id")],
    aliases: Annotated[Optional[bool], typer.Option(
        "--aliases/--no-aliases", help="Search aliases (default: store config)"
    )] = None,
    context: Annotated[str, typer.Option(
        "--context", "-c", help="similarity, document or repository"
    )] = "repository",
    file: Annotated[Optional[list[str]], typer.Option(
        "--file", "-f", help="Only analyse these cards (repeatable)"
    )] = None,
):
    """Find tagged and untagged references to a tag."""
    store = _get_orcs()
    policy = None
    if aliases is not None:
        policy = AliasPolicy(aliases, aliases, aliases)
    with _errors():
        result = store.analyze_references(tag_id, policy, context, file)
    lines = [f"{result.total_tagged_count} tagged, {result.total_untagged_count} untagged"]
    for ref in result.untagged:
        lines.append(f"  {ref.confidence:.2f}  {ref.filename}:{ref.start}  {ref.text!r}  {ref.context}")
    _emit(result, "\n".join(lines))


def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="orcs CLI", store_path=_get_store_override())
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
