"""Main CLI entry point."""

import asyncio
import json
import os
import sys

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from ..core.engine import ChatRequest, Engine, QueryRequest
from ..core.models import LogHandle
from ..core.patterns import content_search, get_pattern, tool_search
from ..core.streaming import encode_ndjson
from ..utils.config import ConfigManager
from ..utils.exceptions import LogNotFound, SessionQError
from ..utils.logger import setup_logger


console = Console()
err_console = Console(stderr=True)


def _fail(message) -> None:
    err_console.print(f"[red]Error: {escape(str(message))}[/red]", highlight=False)
    sys.exit(1)


def _engine(ctx: click.Context) -> Engine:
    state = ctx.obj
    if state.get("engine") is None:
        state["engine"] = Engine.from_settings(state["config"].settings)
        ctx.call_on_close(state["engine"].evaluator.close)
    return state["engine"]


def _handle(engine: Engine, reference: str) -> LogHandle:
    if "/" in reference:
        return LogHandle.parse(reference)
    handle = engine.store.find_log(reference)
    if handle is None:
        raise LogNotFound(f"Log '{reference}' not found")
    return handle


def _print_json(value) -> None:
    click.echo(json.dumps(value, indent=2, ensure_ascii=False, default=str))


def _size(size: int) -> str:
    for unit in ("B", "KB", "MB"):
        if size < 1024:
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GB"


async def _emit(envelopes) -> None:
    async for line in encode_ndjson(envelopes):
        click.echo(line, nl=False)


@click.group()
@click.option('--config-dir', default='config', help='Configuration directory path')
@click.option('--root', help='Log root directory (overrides configuration)')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose logging')
@click.option('--app-log-file', help='Log file for application logs')
@click.pass_context
def main(ctx, config_dir, root, verbose, app_log_file):
    """Query and stream conversation logs, and chat with the conversational tool."""
    environ = dict(os.environ)
    if root:
        environ["SESSIONQ_ROOT"] = root

    config = ConfigManager(config_dir, environ=environ)
    try:
        settings = config.settings
    except SessionQError as e:
        _fail(e)

    log_level = "DEBUG" if verbose else settings.logging.level
    setup_logger(
        level=log_level,
        log_file=app_log_file or settings.logging.file,
        redact=(str(settings.store.root.resolve()),),
        security_log_file=settings.logging.security_file,
    )
    ctx.obj = {"config": config, "engine": None}


@main.command()
@click.option('--output-format', '-f', default='human',
              type=click.Choice(['json', 'human']),
              help='Output format')
@click.pass_context
def projects(ctx, output_format):
    """List collections, newest first."""
    try:
        collections = _engine(ctx).store.list_collections()
    except SessionQError as e:
        _fail(e)

    if output_format == 'json':
        _print_json([c.to_dict() for c in collections])
        return

    table = Table(title="Collections")
    table.add_column("Name", style="cyan")
    table.add_column("Logs", justify="right")
    table.add_column("Size", justify="right")
    table.add_column("Last modified")
    for c in collections:
        if c.error:
            table.add_row(c.name, "-", "-", f"[red]{escape(c.error)}[/red]")
        else:
            table.add_row(c.name, str(c.log_count), _size(c.total_size), c.last_modified.isoformat())
    console.print(table)


@main.command()
@click.argument('collection')
@click.option('--output-format', '-f', default='human',
              type=click.Choice(['json', 'human']),
              help='Output format')
@click.pass_context
def logs(ctx, collection, output_format):
    """List the logs of one collection."""
    try:
        infos = _engine(ctx).store.list_logs(collection)
    except SessionQError as e:
        _fail(e)

    if output_format == 'json':
        _print_json([info.to_dict() for info in infos])
        return

    table = Table(title=f"Logs in {collection}")
    table.add_column("Log", style="cyan")
    table.add_column("Size", justify="right")
    table.add_column("Modified")
    for info in infos:
        table.add_row(info.handle.log_id, _size(info.size), info.modified.isoformat())
    console.print(table)


@main.command()
@click.argument('log_ref')
@click.option('--limit', type=int, help='Maximum number of entries')
@click.option('--offset', type=int, default=0, help='Lines to skip')
@click.pass_context
def read(ctx, log_ref, limit, offset):
    """Print the entries of a log as JSON lines."""
    try:
        engine = _engine(ctx)
        result = engine.store.read_all(_handle(engine, log_ref), limit=limit, offset=offset)
    except SessionQError as e:
        _fail(e)

    for entry in result.entries:
        click.echo(json.dumps(entry.payload, ensure_ascii=False))
    for diagnostic in result.diagnostics:
        err_console.print(f"[yellow]line {diagnostic.line}: {escape(diagnostic.error)}[/yellow]", highlight=False)


@main.command()
@click.argument('collection', required=False)
@click.option('--log', 'log_ref', help='Show details of one log instead')
@click.pass_context
def stats(ctx, collection, log_ref):
    """Statistics for a collection or a single log."""
    if not collection and not log_ref:
        _fail("Give a COLLECTION or --log")

    try:
        engine = _engine(ctx)
        if log_ref:
            _print_json(engine.store.log_details(_handle(engine, log_ref)).to_dict())
        else:
            _print_json(engine.store.collection_stats(collection))
    except SessionQError as e:
        _fail(e)


@main.command()
@click.argument('expression')
@click.pass_context
def validate(ctx, expression):
    """Check an expression without running it."""
    try:
        info = _engine(ctx).validate(expression)
    except SessionQError as e:
        _fail(e)

    console.print(f"[green]✓ Valid[/green] ({info['strategy']})")
    console.print(f"Runs cleanly against: {', '.join(info['shapes'])}")
    if info["per_record_expression"] and info["per_record_expression"] != expression:
        console.print(f"Per-record form: {info['per_record_expression']}", markup=False)


@main.command()
@click.option('--category', help='Only patterns of this category')
@click.pass_context
def patterns(ctx, category):
    """List built-in query patterns."""
    try:
        entries = _engine(ctx).patterns(category)
    except SessionQError as e:
        _fail(e)

    table = Table(title="Query patterns")
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Category")
    table.add_column("Expression", overflow="fold")
    for p in entries:
        table.add_row(p["name"], p["category"], escape(p["expression"]))
    console.print(table)


@main.command()
@click.argument('expression', required=False)
@click.option('--pattern', '-p', 'pattern_name', help='Run a built-in pattern instead of EXPRESSION')
@click.option('--collection', '-c', 'collections', multiple=True, help='Collection to query (repeatable)')
@click.option('--log', '-l', 'logs', multiple=True, help='Log to query, collection/id or id (repeatable)')
@click.option('--limit', type=int, help='Maximum number of results')
@click.option('--timeout', type=float, help='Evaluation timeout in seconds')
@click.option('--stream', is_flag=True, help='Stream results as NDJSON envelopes')
@click.option('--output-format', '-f', default='human',
              type=click.Choice(['json', 'human']),
              help='Output format')
@click.pass_context
def query(ctx, expression, pattern_name, collections, logs, limit, timeout, stream, output_format):
    """Run a jq EXPRESSION (or a built-in --pattern) over logs."""
    if bool(expression) == bool(pattern_name):
        _fail("Give either an EXPRESSION or --pattern")
    try:
        expression = expression or get_pattern(pattern_name).expression
    except SessionQError as e:
        _fail(e)

    _run_query(ctx, QueryRequest(expression, list(collections), list(logs), limit=limit, timeout=timeout),
               stream, output_format)


@main.command()
@click.argument('term')
@click.option('--tool', is_flag=True, help='Match records that invoked the tool named TERM')
@click.option('--collection', '-c', 'collections', multiple=True, help='Collection to search (repeatable)')
@click.option('--limit', type=int, help='Maximum number of results')
@click.option('--output-format', '-f', default='human',
              type=click.Choice(['json', 'human']),
              help='Output format')
@click.pass_context
def search(ctx, term, tool, collections, limit, output_format):
    """Find messages containing TERM, or uses of the tool TERM."""
    try:
        expression = tool_search(term) if tool else content_search(term)
    except SessionQError as e:
        _fail(e)

    _run_query(ctx, QueryRequest(expression, list(collections), limit=limit), False, output_format)


def _run_query(ctx, request: QueryRequest, stream: bool, output_format: str) -> None:
    try:
        engine = _engine(ctx)
        if stream:
            asyncio.run(_emit(engine.stream_query(request)))
            return
        response = engine.query(request)
    except SessionQError as e:
        _fail(e)

    if output_format == 'json':
        _print_json(response.to_dict())
        return

    console.print(
        f"[green]{response.total_results} results[/green] from {response.logs_processed} logs "
        f"({response.lines_processed} lines, {response.strategy}, {response.elapsed_ms:.0f}ms)"
    )
    if not response.ordered:
        console.print("[blue]Result order is not significant for this expression[/blue]")
    for value in response.results:
        console.print_json(json.dumps(value, ensure_ascii=False, default=str))
    if response.diagnostics:
        console.print(f"[yellow]{len(response.diagnostics)} lines or logs skipped[/yellow]")
    if response.logs_dropped:
        console.print(f"[yellow]{response.logs_dropped} logs not read (limit reached)[/yellow]")


@main.command()
@click.argument('message')
@click.option('--resume', 'resume_token', help='Resume token of an earlier conversation')
@click.option('--collection', help='Collection whose directory the tool runs in')
@click.option('--stream', is_flag=True, help='Stream the reply as NDJSON envelopes')
@click.option('--model', help='Model passed to the tool')
@click.pass_context
def chat(ctx, message, resume_token, collection, stream, model):
    """Send MESSAGE to the conversational tool."""
    request = ChatRequest(message, resume_token=resume_token, collection=collection,
                          stream=stream, model=model)

    try:
        engine = _engine(ctx)
        if stream:
            asyncio.run(_emit(engine.stream_chat(request)))
            return
        response = asyncio.run(engine.chat(request))
    except SessionQError as e:
        _fail(e)

    console.print(f"[green]Resume token:[/green] {response.resume_token}", highlight=False)
    if isinstance(response.output, (dict, list)):
        console.print_json(json.dumps(response.output, ensure_ascii=False, default=str))
    else:
        console.print(response.raw_output, markup=False)


@main.command('test-config')
@click.option('--check-tool', is_flag=True, help='Also check the conversational tool is installed')
@click.pass_context
def test_config(ctx, check_tool):
    """Test configuration and exit."""
    try:
        config = ctx.obj["config"]
        console.print("[green]Testing configuration...[/green]")
        settings = config.settings

        console.print(f"Log root: {settings.store.root}", highlight=False)
        if not settings.store.root.is_dir():
            console.print("[yellow]Log root does not exist yet[/yellow]")
        console.print(f"Query timeout: {settings.query.timeout_seconds:g}s, "
                      f"cache size: {settings.query.cache_size}", highlight=False)
        console.print(f"Tool command: {' '.join(settings.process.command)} "
                      f"(ceiling {settings.process.ceiling})", highlight=False)

        if check_tool:
            available = asyncio.run(_engine(ctx).orchestrator.check_available())
            if not available:
                _fail(f"{settings.process.command[0]} is not available")
            console.print("[green]✓ Tool responds to --help[/green]")

        console.print("[green]✓ Configuration test passed[/green]")
    except SessionQError as e:
        _fail(f"Configuration test failed: {e}")


if __name__ == '__main__':
    main()
