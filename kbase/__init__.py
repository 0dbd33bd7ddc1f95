"""kbase - knowledge base API and ingestion worker."""

__version__ = "0.3.0"
