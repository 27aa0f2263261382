"""Root pytest configuration (kept intentionally minimal).

The application package resides in the nested `receiptflow/` directory and
pytest's ``pythonpath`` setting already puts the backend directory on
``sys.path``. Test fixtures live in ``tests/conftest.py``.
"""

# Intentionally no path mangling here.
