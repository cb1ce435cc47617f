"""
codeindex main entry point.

Provides the CodeIndexService wrapper and the command line interface.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import click
import structlog

from codeindex.config import Config, load_config
from codeindex.errors import CodeIndexError
from codeindex.indexing.cache import ChangeCache
from codeindex.indexing.ignore_parser import IgnoreResolver
from codeindex.manager import IndexManager, IndexState, IndexStatus, ServiceFactory

logger = structlog.get_logger(__name__)


class CodeIndexService:
    """
    Owns the long-lived pieces around an IndexManager.

    The change cache and ignore resolver are created once here and survive
    every recreate the manager performs.
    """

    def __init__(self, config: Config | None = None, factory: ServiceFactory | None = None) -> None:
        """
        Initialize the service.

        Args:
            config: Configuration instance. Uses default if not provided.
            factory: Optional builder for per-configuration services.
        """
        self.config = config or Config()
        self.config.ensure_directories()

        self.ignore_resolver = IgnoreResolver(self.config.project_root)
        self.cache = ChangeCache(self.config.cache_path)
        self.manager = IndexManager(self.config, self.ignore_resolver, self.cache, factory)
        self._shutdown_event = asyncio.Event()

        logger.info(
            "codeindex service created",
            project_root=str(self.config.project_root),
            data_dir=str(self.config.absolute_data_dir),
        )

    async def initialize(self) -> None:
        await self.cache.initialize()
        self.ignore_resolver.reload()

    async def shutdown(self) -> None:
        """Gracefully shutdown all components."""
        self._shutdown_event.set()
        await self.manager.dispose()
        self.ignore_resolver.stop_watching()
        await self.cache.close()
        logger.info("codeindex service shutdown complete")

    @asynccontextmanager
    async def session(self) -> AsyncIterator["CodeIndexService"]:
        """Context manager for service lifecycle."""
        try:
            await self.initialize()
            yield self
        finally:
            await self.shutdown()

    async def wait_closed(self) -> None:
        await self._shutdown_event.wait()


def _configure_logging(verbose: bool, level_name: str) -> None:
    log_level = logging.DEBUG if verbose else getattr(logging, level_name, logging.INFO)
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
    )


def _echo_status(status: IndexStatus) -> None:
    if status.state is IndexState.ERROR:
        click.echo(f"Error: {status.error_message}", err=True)
    elif status.state is IndexState.STANDBY and status.error_message:
        click.echo(f"Not started: {status.error_message}", err=True)


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file",
)
@click.option(
    "--project",
    "-p",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=Path.cwd(),
    help="Project root directory",
)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose logging",
)
@click.pass_context
def cli(ctx: click.Context, config: Path | None, project: Path, verbose: bool) -> None:
    """codeindex - local semantic code search."""
    ctx.ensure_object(dict)

    loaded = load_config(config_path=config, project_root=project)
    _configure_logging(verbose, loaded.log_level)
    ctx.obj["config"] = loaded


def _without_watcher(config: Config) -> Config:
    return config.model_copy(
        update={"watcher": config.watcher.model_copy(update={"enabled": False})}
    )


@cli.command()
@click.pass_context
def index(ctx: click.Context) -> None:
    """Index the project directory once."""
    config = _without_watcher(ctx.obj["config"])

    async def run_index() -> int:
        service = CodeIndexService(config)
        async with service.session():
            await service.manager.start()
            status = service.manager.status
            _echo_status(status)
            if status.state is not IndexState.INDEXED:
                return 1
            click.echo(f"Processed {status.processed_count} files")
            click.echo(f"Indexed files in cache: {await service.cache.count()}")
            return 0

    ctx.exit(asyncio.run(run_index()))


@cli.command()
@click.argument("query")
@click.option("--limit", "-n", type=int, default=None, help="Maximum number of results")
@click.option("--min-score", type=float, default=None, help="Minimum similarity score")
@click.option("--directory", "-d", default=None, help="Only search below this directory")
@click.pass_context
def search(
    ctx: click.Context,
    query: str,
    limit: int | None,
    min_score: float | None,
    directory: str | None,
) -> None:
    """Search the index."""
    config = _without_watcher(ctx.obj["config"])

    async def run_search() -> int:
        service = CodeIndexService(config)
        async with service.session():
            await service.manager.start()
            if service.manager.state is not IndexState.INDEXED:
                _echo_status(service.manager.status)
                return 1

            try:
                results = await service.manager.search(
                    query,
                    directory_prefix=directory,
                    min_score=min_score,
                    max_results=limit,
                )
            except CodeIndexError as e:
                click.echo(f"Search failed: {e}", err=True)
                return 1

            if not results:
                click.echo("No results")
            for i, result in enumerate(results, 1):
                click.echo(f"\n--- Result {i} (score: {result.score:.3f}) ---")
                click.echo(f"File: {result.file_path}:{result.start_line}-{result.end_line}")
                content = result.content
                click.echo(content[:500] + "..." if len(content) > 500 else content)
            return 0

    ctx.exit(asyncio.run(run_search()))


@cli.command()
@click.pass_context
def watch(ctx: click.Context) -> None:
    """Index, then keep the index updated as files change."""
    config = ctx.obj["config"]

    async def run_watch() -> None:
        service = CodeIndexService(config)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, service._shutdown_event.set)

        async with service.session():
            service.ignore_resolver.start_watching()
            service.manager.subscribe(_echo_status)
            await service.manager.start()
            click.echo("Watching for changes... (Ctrl+C to stop)")
            await service.wait_closed()

    asyncio.run(run_watch())


@cli.command()
@click.pass_context
def clear(ctx: click.Context) -> None:
    """Clear stored vectors and the change cache, then rebuild the index."""
    config = _without_watcher(ctx.obj["config"])

    async def run_clear() -> int:
        service = CodeIndexService(config)
        async with service.session():
            await service.manager.clear_index()
            status = service.manager.status
            _echo_status(status)
            if status.state is not IndexState.INDEXED:
                return 1
            click.echo(f"Rebuilt index: {status.processed_count} files processed")
            return 0

    ctx.exit(asyncio.run(run_clear()))


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show configuration and index statistics."""
    config = ctx.obj["config"]

    async def run_status() -> None:
        service = CodeIndexService(config)
        async with service.session():
            click.echo("codeindex status")
            click.echo("=" * 40)
            click.echo(f"project_root: {config.project_root}")
            click.echo(f"data_dir: {config.absolute_data_dir}")
            click.echo(f"enabled: {config.enabled}")
            click.echo(f"embedder: {config.embedder.provider.value}")
            click.echo(f"vector_store: {config.vector_store.backend.value}")
            click.echo(f"ignore_rules: {service.ignore_resolver.active_source.value}")
            click.echo(f"indexed_files: {await service.cache.count()}")

    asyncio.run(run_status())


def main() -> None:
    """Main entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
