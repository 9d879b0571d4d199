"""
Typed list filter for the item store.

Listing accepts a fixed set of filter keys (status, starred, pagination).
Every key is validated here before it reaches the storage layer, and the
store only receives parameterized SQL fragments built from the fixed
column names below.
"""

import logging
from typing import Any, List, Optional, Tuple

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .models.schemas import ItemStatus

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 500


class QueryValidationError(ValidationError):
    """Invalid list filter."""


class ItemQuery(BaseModel):
    """Validated filter and pagination for listing items."""

    status: Optional[ItemStatus] = Field(None, description="Status filter")
    starred: Optional[bool] = Field(None, description="Starred filter")
    limit: int = Field(50, ge=1, le=MAX_PAGE_SIZE, description="Page size")
    offset: int = Field(0, ge=0, description="Page offset")

    model_config = {"extra": "forbid", "frozen": True}

    @classmethod
    def build(cls, **filters: Any) -> "ItemQuery":
        """
        Build a query from raw filter values.

        Args:
            **filters: Any of status, starred, limit, offset

        Returns:
            Validated query

        Raises:
            QueryValidationError: If a key is unknown or a value is invalid
        """
        cleaned = {key: value for key, value in filters.items() if value is not None}
        try:
            return cls(**cleaned)
        except PydanticValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                for err in e.errors()
            )
            raise QueryValidationError(f"Invalid list filter: {problems}") from e

    def where_clause(self) -> Tuple[str, List[Any]]:
        """Return the WHERE clause and its parameters."""
        conditions: List[str] = []
        params: List[Any] = []

        if self.status is not None:
            conditions.append("status = ?")
            params.append(self.status.value)

        if self.starred is not None:
            conditions.append("starred = ?")
            params.append(1 if self.starred else 0)

        if not conditions:
            return "", params
        return " WHERE " + " AND ".join(conditions), params

    def to_sql(self) -> Tuple[str, List[Any]]:
        """Return the full SELECT statement and its parameters."""
        where, params = self.where_clause()
        sql = f"SELECT * FROM memes{where} ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?"
        return sql, params + [self.limit, self.offset]
