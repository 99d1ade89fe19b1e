import click

from recall_mcp.settings import Settings
from recall_mcp.utilities.logging import configure_logging


@click.command()
@click.option("--host", default=None, help="Host to bind to (default: HOST or 0.0.0.0)")
@click.option("--port", default=None, type=int, help="Port to listen on for HTTP (default: PORT or 3000)")
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    help="Logging level (default: LOG_LEVEL or INFO)",
)
@click.option(
    "--enable-resumability",
    is_flag=True,
    default=None,
    help="Keep a per-session event log so SSE streams can be resumed with Last-Event-ID",
)
def main(host: str | None, port: int | None, log_level: str | None, enable_resumability: bool | None) -> int:
    overrides = {
        "host": host,
        "port": port,
        "log_level": log_level.upper() if log_level else None,
        "enable_resumability": enable_resumability or None,
    }
    settings = Settings(**{key: value for key, value in overrides.items() if value is not None})

    configure_logging(settings.log_level)

    from recall_mcp.app import create_app

    app = create_app(settings)

    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())

    return 0


if __name__ == "__main__":
    main()
