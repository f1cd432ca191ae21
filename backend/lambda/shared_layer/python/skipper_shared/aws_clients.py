"""skipper_shared.aws_clients — Lazy-singleton AWS service clients.

Provides factory functions that create boto3 clients on first call and
cache them for subsequent invocations. This avoids paying the boto3 client
construction cost on cold starts until the client is actually needed.
"""

from __future__ import annotations

import os
from typing import Optional

import boto3
from botocore.config import Config

# ---------------------------------------------------------------------------
# Default region (overridable via env)
# ---------------------------------------------------------------------------

AWS_REGION: str = os.environ.get(
    "AWS_REGION", os.environ.get("AWS_DEFAULT_REGION", "us-east-1")
)

# ---------------------------------------------------------------------------
# Client singletons
# ---------------------------------------------------------------------------

_ssm = None
_ecs = None
_cloudformation = None


def _get_ssm(region: Optional[str] = None):
    """Get (or create) the SSM client singleton."""
    global _ssm
    if _ssm is None:
        _ssm = boto3.client(
            "ssm",
            region_name=region or AWS_REGION,
            config=Config(retries={"max_attempts": 5, "mode": "standard"}),
        )
    return _ssm


def _get_ecs(region: Optional[str] = None):
    """Get (or create) the ECS client singleton."""
    global _ecs
    if _ecs is None:
        _ecs = boto3.client(
            "ecs",
            region_name=region or AWS_REGION,
            config=Config(retries={"max_attempts": 3, "mode": "standard"}),
        )
    return _ecs


def _get_cloudformation(region: Optional[str] = None):
    """Get (or create) the CloudFormation client singleton."""
    global _cloudformation
    if _cloudformation is None:
        _cloudformation = boto3.client(
            "cloudformation",
            region_name=region or AWS_REGION,
            config=Config(retries={"max_attempts": 5, "mode": "standard"}),
        )
    return _cloudformation
