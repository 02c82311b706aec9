"""Base Pydantic models for the gateway SDK.

This module provides the base model class that all SDK Pydantic models inherit from.
It establishes consistent configuration across all models including:

- Strict field validation (no extra fields allowed)
- Immutable instances, so records can be shared between coroutines
- Consistent serialization behavior

Example:
    >>> from gitlab_mcp.sdk.models import SdkBaseModel
    >>> from pydantic import Field
    >>>
    >>> class MyModel(SdkBaseModel):
    ...     name: str
    ...     count: int = Field(default=0, ge=0)
    >>>
    >>> instance = MyModel(name="test")
    >>> instance.model_dump()
    {'name': 'test', 'count': 0}
"""

from pydantic import BaseModel, ConfigDict


class SdkBaseModel(BaseModel):
    """Base model for all SDK Pydantic models.

    - extra="forbid": Rejects any fields not defined in the model
    - frozen=True: Makes instances immutable; use ``model_copy(update=...)``
      to derive a modified record

    Configuration models that are assembled incrementally override
    ``model_config`` with ``frozen=False``.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)
