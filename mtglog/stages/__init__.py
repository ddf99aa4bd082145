"""Pipeline stages as framework-free async functions.

WHY: The same stage logic is reachable from the HTTP apps, the Slack
events background task and the CLI. Keeping it out of FastAPI handlers
means each caller only translates inputs and StageError outputs.

RULES:
- Stage functions take a Services container as their first argument
- Failures are raised as StageError (with an HTTP status) or propagate
"""
