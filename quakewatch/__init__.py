"""QuakeWatch: run a data-collection task on a fixed interval."""

__version__ = "1.0.0"
