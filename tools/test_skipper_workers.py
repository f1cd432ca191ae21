import contextlib
import importlib.util
import io
import json
import pathlib
import sys
import tempfile
import unittest
from unittest.mock import MagicMock, patch

from botocore.exceptions import ClientError

sys.path.insert(
    0, str(pathlib.Path(__file__).resolve().parent.parent / "backend" / "lambda" / "shared_layer" / "python")
)

MODULE_PATH = pathlib.Path(__file__).with_name("skipper_workers.py")
SPEC = importlib.util.spec_from_file_location("skipper_workers_unit", MODULE_PATH)
skipper_workers = importlib.util.module_from_spec(SPEC)
assert SPEC and SPEC.loader
sys.modules[SPEC.name] = skipper_workers
SPEC.loader.exec_module(skipper_workers)

from skipper_shared.errors import InvalidInput  # noqa: E402


def _worker(worker_id, event="issues", enabled=True):
    return {
        "metadata": {"id": worker_id, "type": "t", "enabled": enabled},
        "triggers": [{"provider": "github", "event": event}],
        "runtime": {"prompt": "p"},
    }


def _run(argv):
    out = io.StringIO()
    with contextlib.redirect_stdout(out):
        code = skipper_workers.main(argv)
    return code, out.getvalue()


class _RepoTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = pathlib.Path(self._tmp.name)
        self.worker_dir = self.root / ".skipper" / "worker"
        self.worker_dir.mkdir(parents=True)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _write(self, name, raw):
        (self.worker_dir / name).write_text(json.dumps(raw), encoding="utf-8")


class DefaultsTests(unittest.TestCase):
    def test_resolve_deploy_defaults(self):
        defaults = skipper_workers.resolve_deploy_defaults(
            cwd="/work/My Service!",
            env={"AWS_PROFILE": "dev", "AWS_DEFAULT_REGION": "eu-west-1"},
        )
        self.assertEqual(defaults, {"service": "My-Service", "env": "dev", "region": "eu-west-1"})

    def test_explicit_env_wins(self):
        defaults = skipper_workers.resolve_deploy_defaults(
            cwd="/work/x",
            env={"SKIPPER_AWS_SERVICE": "api", "SKIPPER_AWS_ENV": "prod", "AWS_PROFILE": "dev", "AWS_REGION": "us-west-2"},
        )
        self.assertEqual(defaults, {"service": "api", "env": "prod", "region": "us-west-2"})

    def test_fallbacks(self):
        defaults = skipper_workers.resolve_deploy_defaults(cwd="/", env={})
        self.assertEqual(defaults, {"service": "skipper", "env": "sandbox", "region": "us-east-1"})

    def test_is_simple_name(self):
        self.assertTrue(skipper_workers.is_simple_name("svc-01"))
        self.assertFalse(skipper_workers.is_simple_name("svc_01"))
        self.assertFalse(skipper_workers.is_simple_name(""))

    def test_parse_tags(self):
        self.assertIsNone(skipper_workers.parse_tags(""))
        self.assertEqual(
            skipper_workers.parse_tags("team=core, url=a=b"),
            {"team": "core", "url": "a=b"},
        )
        with self.assertRaises(InvalidInput):
            skipper_workers.parse_tags("team=")

    def test_parse_parameters(self):
        self.assertEqual(
            skipper_workers.parse_parameters(["A=1", "B="]),
            {"A": "1", "B": ""},
        )
        with self.assertRaises(InvalidInput):
            skipper_workers.parse_parameters(["novalue"])

    def test_stack_target_rejects_bad_names(self):
        with self.assertRaises(InvalidInput):
            skipper_workers.resolve_stack_target("bad_name", "dev", None, None)
        target = skipper_workers.resolve_stack_target("api", "dev", None, "us-east-2")
        self.assertEqual(target, {"stack_name": "api-dev", "region": "us-east-2"})


class ValidateCommandTests(_RepoTestCase):
    def test_prints_subscriptions(self):
        self._write("a.json", _worker("review", event="pull_request"))
        self._write("b.json", _worker("solver"))
        code, out = _run(["validate", "--dir", str(self.root)])
        self.assertEqual(code, 0)
        self.assertIn("[worker] review: pull_request", out)
        self.assertIn("2 worker(s) valid; events: issues,pull_request", out)

    def test_invalid_worker_exits_non_zero(self):
        self._write("a.json", {"metadata": {"id": "x"}})
        code, out = _run(["validate", "--dir", str(self.root)])
        self.assertEqual(code, 1)
        self.assertIn("[ERROR] metadata.type in .skipper/worker/a.json is required", out)

    def test_strict_requires_workers(self):
        code, _ = _run(["validate", "--dir", str(self.root), "--strict"])
        self.assertEqual(code, 1)


class SyncCommandTests(_RepoTestCase):
    def test_dry_run(self):
        self._write("a.json", _worker("solver"))
        code, out = _run(["sync", "api", "dev", "--dir", str(self.root), "--dry-run"])
        self.assertEqual(code, 0)
        payload = json.loads(out.split("[DRY-RUN] ", 1)[1])
        self.assertEqual(payload["stackName"], "api-dev")
        self.assertEqual(payload["workerIds"], ["solver"])
        self.assertIn("WorkersChunk11", payload["workerParameterKeys"])

    def test_sync_merges_onto_existing_parameters(self):
        self._write("a.json", _worker("solver"))
        cfn = MagicMock()
        cfn.describe_stacks.return_value = {
            "Stacks": [
                {
                    "StackStatus": "UPDATE_COMPLETE",
                    "Parameters": [
                        {"ParameterKey": "ServiceName", "ParameterValue": "api"},
                        {"ParameterKey": "WorkersSha256", "ParameterValue": "old"},
                    ],
                }
            ]
        }
        cfn.update_stack.side_effect = ClientError(
            {"Error": {"Code": "ValidationError", "Message": "No updates are to be performed."}},
            "UpdateStack",
        )
        with patch.object(skipper_workers, "_cloudformation", return_value=cfn):
            code, out = _run(["sync", "api", "dev", "--dir", str(self.root)])

        self.assertEqual(code, 0)
        self.assertIn("No updates are to be performed", out)
        kwargs = cfn.update_stack.call_args.kwargs
        self.assertTrue(kwargs["UsePreviousTemplate"])
        params = {p["ParameterKey"]: p for p in kwargs["Parameters"]}
        self.assertEqual(params["ServiceName"], {"ParameterKey": "ServiceName", "UsePreviousValue": True})
        self.assertNotEqual(params["WorkersSha256"]["ParameterValue"], "old")
        self.assertEqual(params["WorkersChunkCount"]["ParameterValue"], "1")

    def test_sync_missing_stack(self):
        self._write("a.json", _worker("solver"))
        cfn = MagicMock()
        cfn.describe_stacks.side_effect = ClientError(
            {"Error": {"Code": "ValidationError", "Message": "Stack with id api-dev does not exist"}},
            "DescribeStacks",
        )
        with patch.object(skipper_workers, "_cloudformation", return_value=cfn):
            code, out = _run(["sync", "api", "dev", "--dir", str(self.root)])
        self.assertEqual(code, 1)
        self.assertIn("stack not found: api-dev", out)


class DeployCommandTests(_RepoTestCase):
    def test_failure_prints_summary(self):
        template = self.root / "template.json"
        template.write_text("{}", encoding="utf-8")
        cfn = MagicMock()
        cfn.describe_stacks.side_effect = [
            {"Stacks": [{"StackStatus": "UPDATE_COMPLETE"}]},
            {"Stacks": [{"StackStatus": "UPDATE_ROLLBACK_COMPLETE"}]},
        ]
        cfn.describe_stack_events.return_value = {
            "StackEvents": [
                {"LogicalResourceId": "Queue", "ResourceStatus": "UPDATE_FAILED", "ResourceStatusReason": "quota"}
            ]
        }
        with patch.object(skipper_workers, "_cloudformation", return_value=cfn):
            code, out = _run(
                ["deploy", "api", "dev", "--template-file", str(template), "--parameter", "A=1", "--tags", "team=core"]
            )
        self.assertEqual(code, 1)
        self.assertIn("[ERROR]   Queue: UPDATE_FAILED - quota", out)
        kwargs = cfn.update_stack.call_args.kwargs
        self.assertEqual(kwargs["Tags"], [{"Key": "team", "Value": "core"}])

    def test_create_with_workers_prints_outputs(self):
        self._write("a.json", _worker("solver"))
        template = self.root / "template.json"
        template.write_text("{}", encoding="utf-8")
        complete = {
            "Stacks": [
                {
                    "StackStatus": "CREATE_COMPLETE",
                    "Outputs": [{"OutputKey": "QueueUrl", "OutputValue": "https://sqs/q"}],
                }
            ]
        }
        cfn = MagicMock()
        cfn.describe_stacks.side_effect = [
            ClientError({"Error": {"Code": "ValidationError", "Message": "Stack with id api-dev does not exist"}}, "DescribeStacks"),
            complete,
            complete,
        ]
        with patch.object(skipper_workers, "_cloudformation", return_value=cfn):
            code, out = _run(
                ["deploy", "api", "dev", "--template-file", str(template), "--workers-dir", str(self.root)]
            )
        self.assertEqual(code, 0)
        self.assertIn("[output] QueueUrl=https://sqs/q", out)
        params = {p["ParameterKey"] for p in cfn.create_stack.call_args.kwargs["Parameters"]}
        self.assertIn("WorkersSha256", params)


class InstallationCommandTests(unittest.TestCase):
    def test_prints_installation_id(self):
        with tempfile.NamedTemporaryFile("w", suffix=".pem", delete=False) as handle:
            handle.write("pem")
        try:
            with patch.object(skipper_workers, "build_app_jwt", return_value="app-jwt") as build, patch.object(
                skipper_workers, "fetch_repository_installation_id", return_value=77
            ) as fetch:
                code, out = _run(
                    ["installation", "--repo", "acme/api", "--app-id", "123", "--private-key-file", handle.name]
                )
        finally:
            pathlib.Path(handle.name).unlink()
        self.assertEqual(code, 0)
        self.assertIn("[installation] acme/api: 77", out)
        build.assert_called_once_with("123", "pem")
        fetch.assert_called_once_with("acme/api", "app-jwt")


if __name__ == "__main__":
    unittest.main()
