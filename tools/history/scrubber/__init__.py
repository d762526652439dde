"""Fleet-wide commit identity sanitizer."""
