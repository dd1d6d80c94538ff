from __future__ import annotations

from functools import lru_cache

import boto3
from botocore.config import Config

from ...settings import Settings, get_settings


@lru_cache(maxsize=1)
def botocore_config() -> Config:
    # One attempt per call: a rejected batch call fails the bulk operation
    # outright, and only unprocessed keys/items are resubmitted (by the batch
    # coordinator, within the caller's autoretry budget).
    return Config(
        retries={"total_max_attempts": 1, "mode": "standard"},
        connect_timeout=2,
        read_timeout=10,
    )


def _endpoint_kwargs(settings: Settings) -> dict[str, str]:
    url = (settings.ddb_endpoint_url or "").strip()
    return {"endpoint_url": url} if url else {}


def dynamodb_resource(settings: Settings | None = None):
    """Build a DynamoDB service resource (native Python attribute values).

    Not cached: the handle is passed explicitly to whatever needs it.
    """
    s = settings or get_settings()
    return boto3.resource(
        "dynamodb",
        region_name=s.aws_region,
        config=botocore_config(),
        **_endpoint_kwargs(s),
    )


def dynamodb_client(settings: Settings | None = None):
    """Build a low-level DynamoDB client (AttributeValue-shaped payloads)."""
    s = settings or get_settings()
    return boto3.client(
        "dynamodb",
        region_name=s.aws_region,
        config=botocore_config(),
        **_endpoint_kwargs(s),
    )
