import argparse
import logging
import sys
from pathlib import Path

from .core.config import get_settings, load_settings
from .core.db.db import DatabaseManager, wait_for_db


def setup_logging(log_level: str = "INFO") -> None:
    """Configure application logging."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )
    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.ERROR)
    logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)
    logging.getLogger("uvicorn").setLevel(logging.INFO)
    logging.getLogger("psycopg2").setLevel(logging.WARNING)


logger = logging.getLogger(__name__)


def main():
    """Main entry point for ReviewLoom."""
    parser = argparse.ArgumentParser(description="ReviewLoom - Multi-level AI review analysis")
    parser.add_argument(
        "--port",
        type=int,
        default=7247,
        help="Port for the API server"
    )
    parser.add_argument(
        "--host",
        type=str,
        default="127.0.0.1",
        help="Interface to bind the API server to"
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a YAML config file (defaults to $REVIEWLOOM_CONFIG or ~/.reviewloom/config.yaml)"
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level"
    )
    args = parser.parse_args()

    setup_logging(args.log_level)

    settings = load_settings(Path(args.config)) if args.config else get_settings()
    logger.info(f"Starting ReviewLoom (provider={settings.default_provider}, model={settings.default_model})")

    if settings.database_url.startswith("sqlite:///"):
        Path(settings.database_url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)
    elif not wait_for_db(settings.database_url):
        logger.error("Database is not reachable, giving up")
        sys.exit(1)

    db_manager = DatabaseManager(settings.database_url)
    db_manager.create_tables()
    logger.info("Database tables ready")

    from .core.analysis import AnalysisOrchestrator
    orchestrator = AnalysisOrchestrator.from_settings(settings, db_manager)

    # Build FastAPI app
    from .api.app import create_app
    app = create_app(db_manager=db_manager, orchestrator=orchestrator, settings=settings)

    # Launch with uvicorn
    import uvicorn

    logger.info(f"Starting FastAPI server on http://{args.host}:{args.port}")
    print(f"\n  ReviewLoom is running at: http://localhost:{args.port}")
    print(f"  API docs at: http://localhost:{args.port}/docs\n")

    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_level=args.log_level.lower(),
    )


if __name__ == "__main__":
    main()
