"""Top-level package for the receiptflow entitlement and claims service.

The package groups the subscription tier catalog, the entitlement
evaluator that gates uploads, batch operations and team growth, and the
reimbursement claim workflow together with the persistence, billing and
HTTP layers that surround them.

To run the API locally you can execute:

```bash
uvicorn receiptflow.api.main:app --reload
```

Configuration values are read from environment variables or a ``.env``
file at the project root (see ``receiptflow.core.config``).
"""

__all__: list[str] = []
