"""Storage backends for Courier.

The emitter and dispatcher only talk to :class:`WebhookRepository`.
Two implementations ship with the package:

- ``InMemoryWebhookRepository`` for tests and single-process setups
- ``PostgresWebhookRepository`` backed by an asyncpg pool

Example:
    ```python
    from courier.storage import PostgresWebhookRepository, create_pool, ensure_schema

    pool = await create_pool()
    await ensure_schema(pool)
    repo = PostgresWebhookRepository(pool)
    ```
"""

from .base import WebhookRepository
from .memory import InMemoryWebhookRepository
from .postgres import PostgresWebhookRepository, create_pool
from .schema import SCHEMA_SQL, ensure_schema

__all__ = [
    "InMemoryWebhookRepository",
    "PostgresWebhookRepository",
    "SCHEMA_SQL",
    "WebhookRepository",
    "create_pool",
    "ensure_schema",
]
