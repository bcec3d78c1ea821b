"""Block device operations: layout, verification, formatting, imaging, sanitize."""
