"""buildor_shared.aws_clients: lazy-singleton AWS service clients.

Clients are created on first use and reused across warm invocations. Every
client shares the same short timeouts so a slow dependency fails the
invocation (and gets redelivered) instead of hanging until the Lambda limit.
"""

from __future__ import annotations

import os
from typing import Optional

import boto3
from botocore.config import Config

# ---------------------------------------------------------------------------
# Default region (overridable via env)
# ---------------------------------------------------------------------------

DYNAMODB_REGION: str = os.environ.get("DYNAMODB_REGION", "us-west-2")
CODEBUILD_REGION: str = os.environ.get("CODEBUILD_REGION", DYNAMODB_REGION)
SSM_REGION: str = os.environ.get("SSM_REGION", DYNAMODB_REGION)

_CLIENT_CONFIG = Config(
    connect_timeout=2,
    read_timeout=5,
    retries={"max_attempts": 3, "mode": "standard"},
)

# ---------------------------------------------------------------------------
# Client singletons
# ---------------------------------------------------------------------------

_ddb = None
_codebuild = None
_ssm = None


def _get_ddb(region: Optional[str] = None):
    """Get (or create) the DynamoDB client singleton."""
    global _ddb
    if _ddb is None:
        _ddb = boto3.client(
            "dynamodb",
            region_name=region or DYNAMODB_REGION,
            config=_CLIENT_CONFIG,
        )
    return _ddb


def _get_codebuild(region: Optional[str] = None):
    """Get (or create) the CodeBuild client singleton."""
    global _codebuild
    if _codebuild is None:
        _codebuild = boto3.client(
            "codebuild",
            region_name=region or CODEBUILD_REGION,
            config=_CLIENT_CONFIG,
        )
    return _codebuild


def _get_ssm(region: Optional[str] = None):
    """Get (or create) the SSM client singleton."""
    global _ssm
    if _ssm is None:
        _ssm = boto3.client(
            "ssm",
            region_name=region or SSM_REGION,
            config=_CLIENT_CONFIG,
        )
    return _ssm
