"""Sequential batch runs of record-extraction work items."""
