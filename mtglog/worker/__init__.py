"""Transcription worker: ffmpeg audio extraction, speech-to-text, handoff to summarize."""
