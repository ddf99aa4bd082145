"""Framework-free pipeline rules: statuses, verification, metadata, retries, phases."""
