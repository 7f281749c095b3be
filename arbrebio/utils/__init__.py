"""Utility functions for form input and CSV export."""
from arbrebio.utils.export import SUBSCRIBER_CSV_HEADER, create_csv_writer, generate_subscriber_csv_row
from arbrebio.utils.text import is_valid_name, is_valid_phone, sanitize_input

__all__ = [
    "SUBSCRIBER_CSV_HEADER",
    "create_csv_writer",
    "generate_subscriber_csv_row",
    "is_valid_name",
    "is_valid_phone",
    "sanitize_input",
]
