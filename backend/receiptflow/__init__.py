"""Top-level package for the receipt capture-and-extraction service.

This package turns uploaded receipt photos into structured, validated
expense records. It includes database models, Pydantic schemas, the
processing pipeline and its collaborators (object storage, vision
extraction, queue state machine, bookkeeping reconciliation and human
corrections), Dramatiq maintenance actors and the FastAPI routers.

To run the API locally you can execute:

```bash
uvicorn receiptflow.api.main:app --app-dir backend --reload
```

The default configuration uses a local SQLite database stored in
``receiptflow.db`` and filesystem storage under ``./storage``. You can
override configuration values using environment variables or a ``.env``
file at the project root.
"""

__all__: list[str] = []
