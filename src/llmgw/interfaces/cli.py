"""CLI interface for llmgw using Click."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click
import uvicorn

from llmgw.core.config import Settings, load_settings, set_settings
from llmgw.core.model_catalog import ModelCatalog
from llmgw.llm.registry import list_providers

logger = logging.getLogger(__name__)


def _setup(config_path: Path | None) -> Settings:
    settings = load_settings(config_path)
    set_settings(settings)
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return settings


@click.group()
@click.version_option(version="0.1.0", prog_name="llmgw")
@click.option(
    "--config", "-c", "config_path",
    type=click.Path(path_type=Path), default=None,
    help="Settings YAML (default: config/settings.yaml)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None):
    """llmgw - LLM provider proxy"""
    ctx.obj = _setup(config_path)


@cli.command()
@click.option("--host", default=None, help="Bind address (default from settings)")
@click.option("--port", "-p", type=int, default=None, help="Port (default from settings)")
@click.pass_obj
def serve(settings: Settings, host: str | None, port: int | None):
    """Run the proxy server."""
    from llmgw.interfaces.web.app import create_app

    host = host or settings.server.host
    port = port or settings.server.port
    logger.info("Starting uvicorn server on %s:%d...", host, port)
    config = uvicorn.Config(
        create_app(settings),
        host=host,
        port=port,
        log_level=settings.log_level.lower(),
        access_log=True,
    )
    asyncio.run(uvicorn.Server(config).serve())


@cli.command("providers")
def providers():
    """List registered providers."""
    for name in list_providers():
        click.echo(name)


@cli.command("models")
@click.option("--provider", default=None, help="Only this provider")
@click.pass_obj
def models(settings: Settings, provider: str | None):
    """List models available from configured providers."""
    try:
        result = asyncio.run(ModelCatalog(settings).list_models(provider))
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if not result:
        click.echo("No models found. Check provider API keys.")
        return

    click.echo(f"{'Provider':<12} {'Model':<45} {'Capabilities'}")
    click.echo("-" * 90)
    for model in result:
        click.echo(f"{model.provider:<12} {model.id:<45} {', '.join(model.capabilities)}")


@cli.command("test-key")
@click.argument("provider")
@click.argument("api_key")
@click.pass_obj
def test_key(settings: Settings, provider: str, api_key: str):
    """Check that API_KEY can list PROVIDER's models."""
    try:
        asyncio.run(ModelCatalog(settings).test_provider_api_key(provider, api_key))
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(f"API key for {provider} is valid.")


if __name__ == "__main__":
    cli()
