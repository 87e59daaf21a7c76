from typing import Annotated

from annotated_types import Ge, Gt, Le
from pydantic import BaseModel

DEFAULT_BATCH_SIZE = 50


class ProcessingConfig(BaseModel):
    """
    A model representing the batch processing configuration.

    Attributes:
        batch_size (Annotated[int, Gt(gt=0), Le(le=2048)]): How many contacts
            one sweep selects when no explicit ids are given. Default is 50.
        concurrency (Annotated[int, Gt(gt=0), Le(le=10)]): How many contacts
            are processed at the same time. Default is 1 (sequential).
        provider_retries (Annotated[int, Ge(ge=0), Le(le=5)]): How many times
            a failed embedding request is retried before the contact is
            recorded as an error. Default is 0.
    """

    batch_size: Annotated[int, Gt(gt=0), Le(le=2048)] = DEFAULT_BATCH_SIZE
    concurrency: Annotated[int, Gt(gt=0), Le(le=10)] = 1
    provider_retries: Annotated[int, Ge(ge=0), Le(le=5)] = 0
