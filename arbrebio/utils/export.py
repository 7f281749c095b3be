"""CSV export helpers for the subscriber list."""
import csv
from io import StringIO
from typing import Any, Optional


SUBSCRIBER_CSV_HEADER = ["Email", "Full Name", "Source", "Created At"]


def create_csv_writer(output: Optional[StringIO] = None) -> tuple[Any, StringIO]:
    """Create a CSV writer with a StringIO buffer.

    Args:
        output: Optional StringIO buffer. If None, a new one is created.

    Returns:
        tuple: (csv.writer, StringIO) - The writer and its buffer.
    """
    if output is None:
        output = StringIO()
    writer = csv.writer(output, lineterminator="\n")
    return writer, output


def generate_subscriber_csv_row(subscriber: Any) -> list:
    """Generate a CSV row for a subscriber.

    Args:
        subscriber: Object with attributes: email, full_name, source, created_at

    Returns:
        list: Row data ready for csv.writer.writerow()
    """
    created_at = subscriber.created_at.isoformat() if subscriber.created_at else ""
    return [
        subscriber.email,
        subscriber.full_name or "",
        subscriber.source or "",
        created_at,
    ]
