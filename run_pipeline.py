#!/usr/bin/env python3
"""
=================================================
CoS Extract-and-Merge Batch Runner
=================================================

Runs the extract-and-merge pipeline over a local folder of attachments,
the same way the portal does for attachments selected from an inbox:
1.  Ingestion: extracting text from each PDF / Word document.
2.  Classification: guessing itinerary vs. artist details.
3.  Extraction: per-document field extraction with bounded retry.
4.  Merge: one record per distinct artist across all documents.
5.  Tracking: optional reconciliation into a user's tracked artists.
6.  Reporting: JSON, notes and CSV summaries of the run.

The pipeline is configured through the `config.yaml` file.
"""

import argparse
import logging
import signal
import sys
import threading
from datetime import datetime
from pathlib import Path

from cos_portal.config import load_config, setup_logging
from cos_portal.errors import CosPortalError
from cos_portal.extraction import Provenance
from cos_portal.pipeline import Attachment, ExtractMergePipeline, PipelineState
from cos_portal.reporting import Reporter
from cos_portal.repository import SqlArtistRepository
from cos_portal.tracker import ArtistTracker

SUPPORTED_SUFFIXES = {".pdf", ".docx", ".doc"}


def collect_attachments(input_dir: Path, subject: str = None, sender: str = None):
    """Reads every supported file in a folder, sorted by name."""
    attachments = []
    for path in sorted(input_dir.iterdir()):
        if path.is_file() and path.suffix.lower() in SUPPORTED_SUFFIXES:
            attachments.append(Attachment(path.name, path.read_bytes(), Provenance(None, subject, sender)))
    return attachments


def main():
    """Main function to run the extract-and-merge batch."""
    parser = argparse.ArgumentParser(description="CoS extract-and-merge batch runner")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to the configuration file (default: $COS_CONFIG or config.yaml)"
    )
    parser.add_argument(
        "--input-dir",
        type=Path,
        required=True,
        help="Folder holding the attachments of one request."
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        help="Override the output directory specified in the config file."
    )
    parser.add_argument("--subject", help="Subject of the source email, recorded as provenance.")
    parser.add_argument("--sender", help="From header of the source email, recorded as provenance.")
    parser.add_argument(
        "--track-as",
        metavar="EMAIL",
        help="Reconcile the merged artists into this user's tracker."
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose DEBUG logging."
    )
    args = parser.parse_args()

    try:
        config = load_config(args.config)
    except CosPortalError as e:
        setup_logging()
        logging.error(str(e))
        return 1

    log_level = "DEBUG" if args.verbose else config.get("log_level", "INFO")
    setup_logging(log_level)

    logger = logging.getLogger(__name__)
    logger.info("🚀 Starting CoS extract-and-merge run...")

    if not args.input_dir.is_dir():
        logger.error(f"Input directory does not exist: {args.input_dir}")
        return 1

    base_output_dir = args.output_dir or Path(config.get("reporting", {}).get("output_directory", "output/"))
    run_output_dir = base_output_dir / datetime.now().strftime('%Y%m%d_%H%M%S')
    logger.info(f"Outputs for this run will be saved in: {run_output_dir}")

    attachments = collect_attachments(args.input_dir, args.subject, args.sender)
    if not attachments:
        logger.warning("No PDF or Word documents found. Pipeline will stop.")
        return 1

    # Ctrl+C stops the batch at the next document boundary.
    cancel_event = threading.Event()

    def request_cancel(signum, frame):
        logger.warning("Cancellation requested. Stopping after the current document.")
        cancel_event.set()

    signal.signal(signal.SIGINT, request_cancel)

    pipeline = ExtractMergePipeline(config)
    reporter = Reporter(config, run_output_dir)

    try:
        result = pipeline.run(
            attachments,
            cancel_event=cancel_event,
            on_progress=lambda state, done, total: logger.info(f"[{state.value}] {done}/{total}"),
        )

        artists = None
        if args.track_as and result.state == PipelineState.DONE:
            tracker = ArtistTracker(config, SqlArtistRepository(config))
            reconciled = tracker.reconcile(args.track_as, result.records)
            logger.info(f"Tracker: {len(reconciled.added)} added, {len(reconciled.duplicates)} already tracked.")
            artists = tracker.list_artists(args.track_as)

        reporter.generate_reports(result, artists)

    except CosPortalError as e:
        logger.critical(f"A critical error occurred during pipeline execution: {e}", exc_info=True)
        logger.critical("Pipeline execution halted.")
        return 1

    if result.state != PipelineState.DONE:
        logger.error(f"❌ Pipeline ended in state '{result.state.value}': {result.error}")
        return 1

    logger.info(f"✅ Pipeline finished successfully with {len(result.records)} artist record(s).")
    return 0


if __name__ == "__main__":
    from dotenv import load_dotenv
    load_dotenv()
    sys.exit(main())
