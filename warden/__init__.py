"""Warden — Access control and security audit core.

Warden guards an IT inventory backend: it decides who may do what, records
every security-relevant event in a durable audit trail, raises alerts when
failures pile up, and keeps stored secrets encrypted at rest.

Architecture layers (bottom to top):
    1. Security  — Permission matrix, secret cipher, audit trail, gate, monitor
    2. Accounts  — User store, bearer tokens, login / lockout flow
    3. Events    — NDJSON fallback channel and alert topic
    4. API/CLI   — FastAPI HTTP surface, Typer command line
"""

__version__ = "0.1.0"
__author__ = "Warden Contributors"
__license__ = "Apache-2.0"

__all__ = [
    "__version__",
]
