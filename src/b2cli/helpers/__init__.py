"""b2cli helpers."""

from b2cli.helpers.formatting import (
    build_tree,
    format_date,
    format_size,
    is_text,
    long_header,
    long_line,
    render_tree,
)

__all__ = [
    # Listing output
    "format_size",
    "format_date",
    "long_header",
    "long_line",
    # Tree view
    "build_tree",
    "render_tree",
    # Content
    "is_text",
]
