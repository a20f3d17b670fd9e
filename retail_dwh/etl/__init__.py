"""Extract-transform-load processors."""
