"""test_layer.py — Unit tests for skipper_shared clients, params and errors.

Run from shared_layer directory:
    PYTHONPATH=python python3 -m pytest test_layer.py -v
"""

from __future__ import annotations

import os
import sys
import unittest
from unittest.mock import MagicMock, patch

# Ensure the layer's python/ directory is importable.
sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), "python"))

from skipper_shared.aws_clients import _get_cloudformation, _get_ecs, _get_ssm
from skipper_shared.errors import (
    AuthError,
    IntegrityError,
    InvalidPayload,
    SizeLimitError,
    SkipperError,
    StackBusyError,
    StackDeployError,
    StackTimeoutError,
    ValidationError,
)
from skipper_shared.worker_params import (
    default_worker_parameter_values,
    worker_chunk_key,
    worker_chunk_keys,
)


class AwsClientTests(unittest.TestCase):
    @patch("skipper_shared.aws_clients.boto3")
    def test_get_ecs_singleton(self, mock_boto3):
        import skipper_shared.aws_clients as clients

        clients._ecs = None  # Reset singleton
        mock_client = MagicMock()
        mock_boto3.client.return_value = mock_client

        result1 = _get_ecs()
        result2 = _get_ecs()

        self.assertIs(result1, result2)
        mock_boto3.client.assert_called_once()
        self.assertEqual(mock_boto3.client.call_args[0][0], "ecs")

        clients._ecs = None  # Clean up

    @patch("skipper_shared.aws_clients.boto3")
    def test_region_override(self, mock_boto3):
        import skipper_shared.aws_clients as clients

        clients._ssm = None
        clients._cloudformation = None
        _get_ssm("eu-west-1")
        _get_cloudformation()

        regions = [c.kwargs["region_name"] for c in mock_boto3.client.call_args_list]
        self.assertEqual(regions, ["eu-west-1", clients.AWS_REGION])

        clients._ssm = None
        clients._cloudformation = None


class WorkerParamsTests(unittest.TestCase):
    def test_chunk_keys(self):
        self.assertEqual(worker_chunk_key(0), "WorkersChunk00")
        self.assertEqual(worker_chunk_keys()[-1], "WorkersChunk11")
        self.assertEqual(len(worker_chunk_keys()), 12)

    def test_default_values(self):
        values = default_worker_parameter_values()
        self.assertEqual(values["WorkersChunkCount"], "0")
        self.assertEqual(values["WorkersSha256"], "")
        self.assertEqual(values["WorkersSchemaVersion"], "1")
        self.assertEqual(values["WorkersChunk05"], "")


class ErrorTests(unittest.TestCase):
    def test_hierarchy(self):
        self.assertTrue(issubclass(InvalidPayload, ValidationError))
        self.assertTrue(issubclass(ValidationError, ValueError))
        self.assertTrue(issubclass(StackBusyError, StackDeployError))
        self.assertTrue(issubclass(StackTimeoutError, TimeoutError))
        for cls in (AuthError, IntegrityError, SizeLimitError, StackDeployError, StackTimeoutError):
            self.assertTrue(issubclass(cls, SkipperError))

    def test_context_attributes(self):
        self.assertEqual(InvalidPayload("bad", "installation.id").path, "installation.id")
        err = SizeLimitError(14, 12)
        self.assertIn("14 chunks > 12", str(err))
        timeout = StackTimeoutError("svc-dev", 1800, "UPDATE_IN_PROGRESS")
        self.assertEqual(
            str(timeout),
            "Timed out after 1800s waiting for stack svc-dev (last_status=UPDATE_IN_PROGRESS)",
        )
        self.assertEqual(StackDeployError("x", summary=None).summary, [])


if __name__ == "__main__":
    unittest.main()
