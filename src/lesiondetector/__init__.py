"""Single-image lesion classification service."""
