import csv
import logging
from datetime import timedelta
from pathlib import Path
from typing import List, Optional

from .models import FolderAnalysisResult, OperationRecord, OperationStatus

_UNITS = ["B", "KB", "MB", "GB", "TB"]


def format_bytes(num_bytes: int) -> str:
    """1536 -> '1.50 KB'. Negative values keep their sign."""
    sign = "-" if num_bytes < 0 else ""
    value = float(abs(num_bytes))
    unit = 0
    while value >= 1024 and unit < len(_UNITS) - 1:
        value /= 1024
        unit += 1
    if unit == 0:
        return f"{sign}{int(value)} B"
    return f"{sign}{value:.2f} {_UNITS[unit]}"


def format_duration(duration: Optional[timedelta]) -> str:
    if duration is None:
        return "-"
    seconds = max(0, int(duration.total_seconds()))
    return f"{seconds // 3600:02d}:{seconds % 3600 // 60:02d}:{seconds % 60:02d}"


def operation_summary(op: OperationRecord) -> str:
    """Multi-line, human-readable description of one journal record."""
    kind = "Rollback" if op.is_rollback else "Compression"
    lines = [
        f"{kind} {op.status.name.replace('_', ' ').title()}",
        f"Folder: {op.path}",
    ]
    if op.is_rollback:
        if op.original_operation_id:
            lines.append(f"Reverts: {op.original_operation_id}")
    else:
        lines.append(f"Mode: {op.mode.name.title()} / {op.algorithm.display_name}")

    lines.append(f"Before: {format_bytes(op.before_bytes)} on disk")
    if op.after_bytes > 0:
        lines.append(f"After: {format_bytes(op.after_bytes)} on disk")
        delta = op.before_bytes - op.after_bytes
        label = "Saved" if delta >= 0 else "Grew"
        lines.append(f"{label}: {format_bytes(abs(delta))}")
    lines.append(f"Duration: {format_duration(op.duration)}")

    if op.status == OperationStatus.FAILED and op.error_message:
        lines.append(f"Error: {op.error_message}")
    return "\n".join(lines)


class ReportGenerator:
    HEADERS = [
        "Path",
        "Relative Path",
        "Category",
        "Size",
        "Size On Disk",
        "Already Compressed",
        "Estimated Ratio",
        "Estimated Savings",
        "Verdict",
        "Skip Reason",
    ]

    def generate_analysis_report(self, result: FolderAnalysisResult, output_csv: str):
        """Writes one row per analyzed file."""
        logging.info(f"Writing analysis report for {result.path} -> {output_csv}")
        Path(output_csv).parent.mkdir(parents=True, exist_ok=True)

        with open(output_csv, "w", newline="", encoding="utf-8") as f:
            writer = csv.writer(f)
            writer.writerow(self.HEADERS)
            for info in result.files:
                writer.writerow([
                    info.path,
                    info.relative_path,
                    info.category,
                    info.size,
                    info.size_on_disk,
                    "yes" if info.is_compressed else "no",
                    f"{info.estimated_ratio:.3f}",
                    info.estimated_savings,
                    self._verdict(info),
                    info.skip_reason or "",
                ])

        logging.info(f"Report complete. {len(result.files)} files.")

    @staticmethod
    def _verdict(info) -> str:
        if info.is_compressed:
            return "Already compressed"
        if info.is_compressible:
            return "Compress"
        return "Skip"

    def analysis_summary(self, result: FolderAnalysisResult) -> List[str]:
        lines = [
            f"Folder: {result.path}",
            f"Files: {result.file_count} ({result.compressed_file_count} already compressed)",
            f"Size: {format_bytes(result.total_size)} ({format_bytes(result.total_size_on_disk)} on disk)",
            f"Estimated savings: {format_bytes(result.estimated_savings)}",
            f"Average ratio: {result.average_ratio:.2f}",
        ]
        if result.warning:
            lines.append(f"Warning: {result.warning}")
        return lines
