"""Owner statement backend package.

Statement generation, editing, bulk jobs and tag schedules behind a small HTTP API.
Run standalone via Uvicorn:

    python -m uvicorn statement_backend.api_app:app --host 127.0.0.1 --port 8000
"""
