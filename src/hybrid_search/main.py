import asyncio
import json
from typing import Annotated, Any, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from typer import Argument, Exit, Option, Typer

from .config import Settings, load_settings
from .errors import HybridSearchError
from .ingest import KnowledgeIngestor, load_jsonl
from .logs import configure_logging
from .models import HybridSearchResponse
from .search import HybridQueryEngine, create_engine, parse_filter_expression, supported_filter_syntax
from .storage import DuckDBStorage

app = Typer(help="Hybrid vector + keyword retrieval over a local knowledge store.")
console = Console()

DbPathOption = Annotated[
    Optional[str],
    Option("--db-path", help="DuckDB file (defaults to $HYBRID_SEARCH_DB_PATH or ~/.hybrid_search)."),
]
ProviderOption = Annotated[
    Optional[str],
    Option("--provider", help="Embedding provider: openai or genai."),
]
LogLevelOption = Annotated[Optional[str], Option("--log-level", help="Log level, e.g. DEBUG.")]
TenantOption = Annotated[str, Option("--tenant", "-t", help="Tenant the data belongs to.")]


def _fail(exc: HybridSearchError) -> None:
    console.print(
        Panel(exc.message, title=f"Error: {exc.kind}", title_align="left", border_style="bold red")
    )
    raise Exit(code=1)


def _config_error(exc: ValueError) -> Exit:
    console.print(
        Panel(str(exc), title="Configuration error", title_align="left", border_style="bold red")
    )
    return Exit(code=1)


def _load_settings(db_path: Optional[str], provider: Optional[str]) -> Settings:
    try:
        return load_settings(db_path=db_path, provider=provider)
    except ValueError as exc:
        raise _config_error(exc) from exc


def _build_engine(settings: Settings, **kwargs: Any) -> HybridQueryEngine:
    try:
        return create_engine(settings, **kwargs)
    except ValueError as exc:
        raise _config_error(exc) from exc


def _render_response(response: HybridSearchResponse) -> None:
    table = Table(title=f"{response.metadata.total_results} result(s)", title_justify="left")
    table.add_column("#", justify="right")
    table.add_column("id")
    table.add_column("fusion", justify="right")
    table.add_column("vector", justify="right")
    table.add_column("keyword", justify="right")
    table.add_column("sources")
    table.add_column("content", overflow="fold", max_width=60)
    for position, result in enumerate(response.results, start=1):
        table.add_row(
            str(position),
            result.id,
            f"{result.fusion_score:.4f}",
            f"{result.vector_score:.3f}" if result.vector_score is not None else "-",
            f"{result.keyword_score:.3f}" if result.keyword_score is not None else "-",
            "+".join(result.sources),
            result.content[:200],
        )
    console.print(table)
    meta = response.metadata
    console.print(
        f"[dim]strategy={meta.search_strategy} vector={meta.vector_results} "
        f"keyword={meta.keyword_results} time={meta.processing_time_ms:.1f}ms"
        + (f" type={meta.query_type}" if meta.query_type else "")
        + "[/]"
    )


@app.command()
def search(
    query: Annotated[str, Argument(help="Natural-language query.")],
    tenant: TenantOption,
    strategy: Annotated[str, Option("--strategy", "-s", help="auto, vector, keyword or hybrid.")] = "auto",
    limit: Annotated[Optional[int], Option("--limit", "-n", help="Maximum results (1-100).")] = None,
    threshold: Annotated[Optional[float], Option("--threshold", help="Similarity threshold (0-1).")] = None,
    filters: Annotated[Optional[str], Option("--filters", "-f", help=supported_filter_syntax())] = None,
    as_json: Annotated[bool, Option("--json", help="Print the raw JSON response.")] = False,
    db_path: DbPathOption = None,
    provider: ProviderOption = None,
    log_level: LogLevelOption = None,
) -> None:
    """Search a tenant's knowledge."""
    configure_logging(log_level)
    engine = _build_engine(_load_settings(db_path, provider))
    try:
        response = asyncio.run(
            engine.search(
                {
                    "query": query,
                    "tenant_id": tenant,
                    "filters": parse_filter_expression(filters),
                    "limit": limit,
                    "threshold": threshold,
                    "strategy": strategy,
                }
            )
        )
    except HybridSearchError as exc:
        _fail(exc)
    finally:
        engine.close()

    if as_json:
        console.print_json(response.model_dump_json())
    else:
        _render_response(response)


@app.command()
def ingest(
    path: Annotated[str, Argument(help="JSONL file with one knowledge node per line.")],
    tenant: Annotated[
        Optional[str],
        Option("--tenant", "-t", help="Assign every record to this tenant."),
    ] = None,
    db_path: DbPathOption = None,
    provider: ProviderOption = None,
    log_level: LogLevelOption = None,
) -> None:
    """Embed knowledge nodes from a JSONL file and store them."""
    configure_logging(log_level)
    settings = _load_settings(db_path, provider)
    try:
        nodes = load_jsonl(path, tenant_id=tenant)
    except HybridSearchError as exc:
        _fail(exc)

    storage = DuckDBStorage(settings.db_path)
    try:
        engine = _build_engine(settings, storage=storage)
    except Exit:
        storage.close()
        raise
    try:
        result = asyncio.run(KnowledgeIngestor(storage, engine.embedding_service).ingest(nodes))
    except HybridSearchError as exc:
        _fail(exc)
    finally:
        engine.close()
        storage.close()

    table = Table(show_header=False)
    table.add_row("Ingested", str(result.ingested))
    table.add_row("Skipped", str(result.skipped))
    table.add_row("Embeddings generated", str(result.embeddings_generated))
    table.add_row("Embeddings from cache", str(result.embeddings_cached))
    console.print(Panel(table, title="Ingestion", title_align="left", border_style="bold green"))
    if result.skipped_ids:
        console.print(f"[yellow]Skipped ids:[/] {', '.join(result.skipped_ids)}")


@app.command()
def health(
    db_path: DbPathOption = None,
    provider: ProviderOption = None,
    log_level: LogLevelOption = None,
) -> None:
    """Run a canned query end-to-end and report whether it succeeded."""
    configure_logging(log_level)
    engine = _build_engine(_load_settings(db_path, provider))
    try:
        healthy = asyncio.run(engine.health_check())
    finally:
        engine.close()
    if healthy:
        console.print("[bold green]healthy[/]")
        return
    console.print("[bold red]unhealthy[/]")
    raise Exit(code=1)


@app.command()
def stats(
    tenant: TenantOption,
    db_path: DbPathOption = None,
    provider: ProviderOption = None,
) -> None:
    """Show stored node counts for a tenant and the active configuration."""
    settings = _load_settings(db_path, provider)
    storage = DuckDBStorage(settings.db_path)
    try:
        nodes = storage.count_nodes(tenant_id=tenant)
        embedded = storage.has_embeddings(tenant_id=tenant)
    finally:
        storage.close()

    table = Table(show_header=False)
    table.add_row("Database", settings.db_path)
    table.add_row("Tenant", tenant)
    table.add_row("Active nodes", str(nodes))
    table.add_row("Has embeddings", "yes" if embedded else "no")
    table.add_row("Embedding", f"{settings.embedding.provider}/{settings.embedding.model}")
    table.add_row("Fusion", settings.hybrid.fusion_algorithm)
    console.print(table)
    console.print_json(
        json.dumps(
            {
                "hybrid": settings.hybrid.model_dump(mode="json"),
                "vector_search": settings.vector_search.model_dump(mode="json"),
            }
        )
    )


@app.command()
def serve(
    host: Annotated[str, Option("--host", help="Interface to bind.")] = "127.0.0.1",
    port: Annotated[int, Option("--port", help="Port to listen on.")] = 8000,
    log_level: LogLevelOption = None,
) -> None:
    """Serve the HTTP API."""
    from .server import run_server

    run_server(host=host, port=port, log_level=log_level)
