import csv
import json
import logging
from pathlib import Path
from typing import List, Dict, Any, Optional

import pandas as pd

from .pipeline import PipelineResult
from .schema import FIELD_ORDER, display_name, missing_critical_fields
from .tracker import TrackedArtist


class Reporter:
    """
    Writes the outputs of a batch run to disk.
    """
    def __init__(self, config: Dict[str, Any], output_directory: Path):
        """
        Initializes the Reporter.

        Args:
            config: The configuration dictionary from config.yaml.
            output_directory: The root directory for all outputs for this run.
        """
        self.config = config.get('reporting', {})
        self.output_directory = output_directory
        self.logger = logging.getLogger(__name__)

        self.output_directory.mkdir(parents=True, exist_ok=True)

    def generate_reports(self, result: PipelineResult, artists: Optional[List[TrackedArtist]] = None):
        """
        Generates every report for a finished batch.

        Args:
            result: The pipeline result, merged or not.
            artists: The tracker contents after reconciliation, if any.
        """
        self.logger.info(f"Generating reports in: {self.output_directory}")

        if not result.units and not result.failed:
            self.logger.warning("No documents were processed. Skipping report generation.")
            return

        self.generate_csv_summary(result)
        if result.merge_result:
            self.generate_merged_outputs(result)
        else:
            self.logger.warning(f"Batch ended in state '{result.state.value}'. No merged records to write.")
        if artists:
            self.generate_tracker_export(artists)

        self.logger.info("Successfully generated reports.")

    def generate_csv_summary(self, result: PipelineResult):
        """
        Creates one CSV row per attachment: extracted units first, then failures.
        """
        csv_path = self.output_directory / "summary_report.csv"
        fieldnames = ["source_file", "document_type", "status", "people_found", "placeholder_used", "error"]

        with open(csv_path, 'w', newline='', encoding='utf-8') as f:
            writer = csv.DictWriter(f, fieldnames=fieldnames)
            writer.writeheader()
            for unit in result.units:
                writer.writerow({
                    "source_file": unit.filename,
                    "document_type": unit.doc_type.value,
                    "status": "placeholder" if unit.placeholder_used else "extracted",
                    "people_found": len(unit.records),
                    "placeholder_used": unit.placeholder_used,
                    "error": unit.error or "",
                })
            for failed in result.failed:
                writer.writerow({
                    "source_file": failed.filename,
                    "document_type": "",
                    "status": "failed",
                    "people_found": 0,
                    "placeholder_used": False,
                    "error": f"{failed.code}: {failed.error}",
                })

        self.logger.info(f"Successfully created CSV summary: {csv_path}")

    def generate_merged_outputs(self, result: PipelineResult):
        """
        Writes the merged records as JSON and the merge notes as plain text.
        """
        json_path = self.output_directory / "merged_records.json"
        with open(json_path, 'w', encoding='utf-8') as f:
            json.dump(result.records, f, indent=2, ensure_ascii=False)

        notes_path = self.output_directory / "notes.txt"
        lines = [result.notes or "No notes returned.", ""]
        for record in result.records:
            missing = missing_critical_fields(record)
            lines.append(f"{display_name(record)}: {', '.join(missing) if missing else 'complete'}")
        notes_path.write_text("\n".join(lines) + "\n", encoding='utf-8')

        self.logger.info(f"Wrote {len(result.records)} merged record(s) to {json_path}")

    def generate_tracker_export(self, artists: List[TrackedArtist]):
        """
        Exports the tracker as a flat CSV with one row per artist.
        """
        rows = []
        for artist in artists:
            row = {
                "id": artist.id,
                "status": artist.status.value,
                "name": display_name(artist.record),
                "documents": len(artist.visa_documents),
                "email_id": artist.email_id or "",
                "recipient_email": artist.recipient_email or "",
            }
            row.update({k: artist.record.get(k, "") for k in FIELD_ORDER})
            rows.append(row)

        tracker_path = self.output_directory / "tracker.csv"
        df = pd.DataFrame(rows)
        df.to_csv(tracker_path, index=False)
        self.logger.info(f"Exported {len(df)} tracked artist(s) to {tracker_path}")
