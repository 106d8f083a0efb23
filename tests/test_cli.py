import json
import textwrap

import pytest
from click.testing import CliRunner

from enforcement_orchestrator.cli.main import cli


ADAPTER_MODULE = textwrap.dedent('''
    from enforcement_orchestrator.models.provider import ItemResult
    from enforcement_orchestrator.providers.base import ProviderAdapter


    class AcceptingAdapter(ProviderAdapter):
        def __init__(self):
            super().__init__("sim")

        async def apply_batch(self, owner_id, action, items):
            return [ItemResult.ok(item.id) for item in items]


    def create():
        return AcceptingAdapter()
''')


@pytest.fixture
def adapter_spec(tmp_path, monkeypatch, request):
    module_name = f"cli_adapters_{request.node.name}"
    (tmp_path / f"{module_name}.py").write_text(ADAPTER_MODULE, encoding="utf-8")
    monkeypatch.syspath_prepend(str(tmp_path))
    for key in ("ENFORCEMENT_DATABASE_URL", "ENFORCEMENT_AUDIT_WEBHOOK_URL"):
        monkeypatch.delenv(key, raising=False)
    return f"{module_name}:create"


@pytest.fixture
def plan_file(tmp_path):
    path = tmp_path / "plan.json"
    path.write_text(json.dumps({
        "owner_id": "owner-1",
        "provider": "sim",
        "idempotency_key": "cli-plan",
        "actions": [
            {"entity_type": "track", "entity_id": f"t{i}", "action": "remove_liked_song"}
            for i in range(3)
        ]
    }), encoding="utf-8")
    return path


def test_submit_and_run_inline(adapter_spec, plan_file):
    result = CliRunner().invoke(cli, ["-a", adapter_spec, "job", "submit", str(plan_file), "--run"])

    assert result.exit_code == 0, result.output
    assert "Plan submitted successfully!" in result.output
    assert "Actions: 3" in result.output
    assert "Status: succeeded" in result.output
    assert "Items: 3 completed, 0 failed" in result.output


def test_provider_health(adapter_spec):
    result = CliRunner().invoke(cli, ["-a", adapter_spec, "provider", "health"])

    assert result.exit_code == 0, result.output
    assert "sim" in result.output
    assert "closed" in result.output


def test_unknown_job_status(adapter_spec):
    result = CliRunner().invoke(cli, ["-a", adapter_spec, "job", "status", "missing"])

    assert result.exit_code == 1
    assert "Job missing not found" in result.output


def test_empty_dead_letter_queue(adapter_spec):
    result = CliRunner().invoke(cli, ["-a", adapter_spec, "dead-letter", "list"])

    assert result.exit_code == 0, result.output
    assert "No jobs found" in result.output


def test_malformed_adapter_spec(adapter_spec):
    result = CliRunner().invoke(cli, ["-a", "no_callable_here", "provider", "health"])

    assert result.exit_code == 1
    assert "expected module:callable" in result.output


def test_cleanup_with_nothing_to_delete(adapter_spec):
    result = CliRunner().invoke(cli, ["-a", adapter_spec, "job", "cleanup", "--older-than", "60"])

    assert result.exit_code == 0, result.output
    assert "Deleted 0 jobs" in result.output
