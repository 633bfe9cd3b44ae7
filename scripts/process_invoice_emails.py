"""Entry point that files invoices found in the mailbox into OneDrive and the ledger."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
import sys

from dotenv import load_dotenv

# Ensure project root is on sys.path when running as a script
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from invoice_agent.config import Settings
from invoice_agent.drive_client import OneDriveStore
from invoice_agent.graph_client import GraphMailSource, GraphSession
from invoice_agent.invoice_filter import InvoiceFilter
from invoice_agent.ledger import Ledger
from invoice_agent.models import RunSummary
from invoice_agent.paperless_client import NullConverter, PaperlessConverter
from invoice_agent.pdf_renderer import EmailPdfRenderer
from invoice_agent.pipeline import MessagePipeline
from invoice_agent.rate_limiter import RateLimiter
from invoice_agent.scheduler import RunScheduler, TimerContinuation
from invoice_agent.state_store import StateStore
from invoice_agent.validator import DuplicateChecker, InvoiceValidator
from invoice_agent.vertex_client import VertexClient

load_dotenv()

logger = logging.getLogger("process_invoice_emails")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Extract invoices from mailbox messages with Vertex AI and register them."
    )
    parser.add_argument(
        "--clear-processed",
        action="store_true",
        help="Forget processed message ids before running so every match is examined again",
    )
    parser.add_argument(
        "--check-config",
        action="store_true",
        help="Log the effective configuration and exit without processing",
    )
    return parser


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def check_config(settings: Settings, ledger: Ledger, state: StateStore) -> None:
    for key, value in settings.describe().items():
        logger.info("%s = %s", key, value)
    logger.info("ledger rows = %s", ledger.count())
    logger.info("processed message ids = %s", len(state.processed_ids()))
    logger.info("last run = %s", state.last_run_time())
    logger.info("continuation due at = %s", state.continuation_due_at())


def build_scheduler(settings: Settings, ledger: Ledger, state: StateStore) -> RunScheduler:
    graph = GraphSession(settings)
    source = GraphMailSource(graph, page_size=settings.graph_page_size)
    store = OneDriveStore(graph, settings.drive_root_path)
    converter = PaperlessConverter(settings) if settings.paperless_base_url else NullConverter()

    validator = InvoiceValidator(settings.issuer_aliases, settings.marketing_keywords)
    extractor = VertexClient(
        settings,
        RateLimiter(settings.rate_limit_calls_per_minute),
        validator,
    )
    pipeline = MessagePipeline(
        settings,
        source=source,
        store=store,
        converter=converter,
        renderer=EmailPdfRenderer(store),
        extractor=extractor,
        ledger=ledger,
        processed=state,
        early_filter=InvoiceFilter(settings.issuer_aliases, settings.non_invoice_patterns),
        duplicates=DuplicateChecker(ledger, settings.issuer_aliases, settings.ledger_dedup_window),
    )
    scheduler = RunScheduler(settings, source, pipeline, state)
    scheduler.continuation = TimerContinuation(scheduler.run, state)
    return scheduler


def main() -> RunSummary | None:
    parser = build_parser()
    args = parser.parse_args()

    settings = Settings()
    configure_logging(settings.log_level)

    ledger = Ledger(settings.ledger_db)
    state = StateStore(settings.state_db, processed_cap=settings.processed_ids_cap)

    if args.check_config:
        check_config(settings, ledger, state)
        return None
    if args.clear_processed:
        state.clear_processed()

    return build_scheduler(settings, ledger, state).run()


if __name__ == "__main__":
    main()
