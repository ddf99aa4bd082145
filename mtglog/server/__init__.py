"""HTTP surface of the pipeline: the FastAPI stage app and its request helpers."""
