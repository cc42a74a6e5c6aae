"""Pipeline entrypoints for the Narrated Video Factory."""

from app.pipelines.run_full_pipeline import main

__all__ = ["main"]
