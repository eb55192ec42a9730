"""
Main orchestration script for the DV360 feature adoption ETL.

Runs the report pipeline and the SDF pipeline for every advertiser given on
the command line (or configured under sources.dv360.advertiser_ids).
Each advertiser/pipeline pair is processed independently - failures are
logged but don't stop the remaining runs.

Usage:
    python run_pipeline.py 1234567 7654321
    python run_pipeline.py --data-range LAST_30_DAYS 1234567
    python run_pipeline.py --serve
"""

import argparse
import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from dv360_ingestion.config import Settings
from dv360_ingestion.pipelines import run_report_pipeline, run_sdf_pipeline
from dv360_ingestion.server import serve
from dv360_ingestion.sink import TableSink


def setup_logging():
    """Configure logging to file and console."""
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_dir = Path("logs")
    log_dir.mkdir(exist_ok=True)
    log_file = log_dir / f"pipeline_{timestamp}.log"

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler()
        ]
    )
    return logging.getLogger(__name__)


async def run_all(advertiser_ids: List[str], settings: Settings, data_range: Optional[str] = None) -> List[str]:
    """
    Run both pipelines for each advertiser.

    Returns:
        Labels of the runs that failed
    """
    logger = logging.getLogger(__name__)
    sink = TableSink(settings)
    succeeded = []
    failed = []

    for advertiser_id in advertiser_ids:
        runs = [
            ("Report", run_report_pipeline(advertiser_id, data_range, settings=settings, sink=sink)),
            ("SDF", run_sdf_pipeline(advertiser_id, settings=settings, sink=sink)),
        ]
        for name, run in runs:
            label = f"{name} ({advertiser_id})"
            try:
                logger.info(f"\nRunning {label}...")
                result = await run
                succeeded.append(label)
                logger.info(f"✅ {label} completed: {result.message}")
            except Exception as e:
                logger.error(f"❌ {label} failed: {e}", exc_info=True)
                failed.append(label)

    logger.info("\n" + "="*60)
    logger.info("Pipeline execution completed")
    logger.info(f"Successfully loaded: {len(succeeded)} runs")
    if succeeded:
        logger.info(f"  - {', '.join(succeeded)}")
    if failed:
        logger.warning(f"Failed: {len(failed)} runs")
        logger.warning(f"  - {', '.join(failed)}")
    logger.info("="*60)
    return failed


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="DV360 feature adoption ETL")
    parser.add_argument("advertiser_ids", nargs="*", help="DV360 advertiser ids")
    parser.add_argument("--data-range", default=None, help="Report data range (default LAST_7_DAYS)")
    parser.add_argument("--serve", action="store_true", help="Serve the HTTP endpoints instead")
    args = parser.parse_args(argv)

    load_dotenv()
    logger = setup_logging()
    settings = Settings.from_dlt()

    if args.serve:
        serve(settings)
        return 0

    advertiser_ids = args.advertiser_ids or settings.advertiser_ids
    if not advertiser_ids:
        logger.error("No advertiser ids given. Pass them as arguments or set sources.dv360.advertiser_ids")
        return 2

    logger.info("="*60)
    logger.info("Starting DV360 feature adoption pipeline")
    logger.info("="*60)

    failed = asyncio.run(run_all(advertiser_ids, settings, args.data_range))
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
