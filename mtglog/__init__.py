"""mtglog: meeting video pipeline from Slack to Notion.

WHY: Consultants drop meeting recordings into Slack and expect meeting
minutes to appear in Notion. Getting there takes five independent hops
(intake, dispatch, transcription, summarization, Notion export) that can
each fail on their own. This package keeps one task row per video and
moves it through those hops over plain HTTP.

HOW: Two FastAPI apps, the stage app (server/) and the transcription
worker (worker/), share a SQLAlchemy task store (db/), typed outbound
clients (api/) and framework-free stage functions (stages/).

RULES:
- The task row is the single source of truth for pipeline state
- Every status write goes through the transition table in core.status
- Stage functions never import FastAPI; the apps translate their errors
"""

__version__ = "0.1.0"
