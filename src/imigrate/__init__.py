"""
imigrate: Record migration between iMIS environments.

Extracts rows from a source iMIS installation (saved IQA query or raw
business-object feed), maps them onto a destination business object, and
inserts them with a full per-row attempt history so failures can be retried.
"""

__version__ = "0.3.0"
