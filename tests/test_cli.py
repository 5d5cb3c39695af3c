"""Test cli -- operator commands against a temp data directory."""
from __future__ import annotations

import json

import pytest

from autoheal.cli import main
from autoheal.config import HealerConfig
from autoheal.hooks import RECOVERY_LOG_DIRNAME, build_hooks
from autoheal.phases import Phase, ProductionItem
from autoheal.recovery_log import Outcome


@pytest.fixture
def env_hooks():
    """Hooks wired to the same AUTOHEAL_DATA_DIR the CLI reads."""
    return build_hooks(HealerConfig.from_env())


def _save(hooks, item_id: str, phase: Phase, **fields) -> None:
    hooks.store.save(ProductionItem(id=item_id, current_phase=phase.value, **fields))


class TestCli:

    def test_no_command(self):
        assert main([]) == 2

    def test_classify_json(self, capsys):
        assert main(["classify", "429", "Too", "Many", "Requests", "--json"]) == 0
        data = json.loads(capsys.readouterr().out)
        assert data["category"] == "rate_limit"
        assert data["retryable"] is True

    def test_classify_text(self, capsys):
        assert main(["classify", "403 Forbidden: invalid api key"]) == 0
        assert "auth" in capsys.readouterr().out

    def test_phases(self, capsys):
        assert main(["phases", "--json"]) == 0
        assert json.loads(capsys.readouterr().out)[0] == "research"

    def test_sweep(self, env_hooks, capsys):
        assert main(["sweep", "--json"]) == 0
        assert json.loads(capsys.readouterr().out)["recovered"] == 0

    def test_sweeper(self, capsys):
        assert main(["sweeper", "--json"]) == 0
        assert json.loads(capsys.readouterr().out)["success"] is True

    def test_reset_and_loop_guard(self, env_hooks, capsys):
        _save(env_hooks, "a", Phase.REJECTED, phase_attempts=3, rejection_reason="boom")
        assert main(["reset", "a", "--phase", "drafting", "--strategy", "json_repair"]) == 0
        item = env_hooks.store.require("a")
        assert item.phase == Phase.DRAFTING
        assert item.phase_attempts == 0
        assert env_hooks.log.search(target="a")[0].outcome == Outcome.RECOVERED

        assert main(["reset", "a", "--phase", "drafting"]) == 1
        assert main(["reset", "a", "--phase", "drafting", "--force"]) == 0

    def test_reset_needs_phase_for_terminal_items(self, env_hooks):
        _save(env_hooks, "a", Phase.REJECTED)
        assert main(["reset", "a"]) == 2

    def test_reset_missing_item(self):
        assert main(["reset", "ghost", "--phase", "seo"]) == 1

    def test_log_and_summary(self, env_hooks, capsys):
        _save(env_hooks, "a", Phase.SEO)
        main(["reset", "a"])
        capsys.readouterr()

        assert main(["log", "--outcome", "recovered", "--json"]) == 0
        [entry] = json.loads(capsys.readouterr().out)
        assert entry["target"] == "a"

        assert main(["summary", "--json"]) == 0
        assert json.loads(capsys.readouterr().out)["recovered_targets"] == 1

    def test_log_bad_filter(self, capsys):
        assert main(["log", "--outcome", "fixed"]) == 2
        assert "Valid values" in capsys.readouterr().out

    def test_purge(self, env_hooks, capsys):
        log_dir = env_hooks.config.data_path / RECOVERY_LOG_DIRNAME
        log_dir.mkdir(parents=True, exist_ok=True)
        (log_dir / "2000-01-01.json").write_text("[]", encoding="utf-8")

        assert main(["purge", "--dry-run"]) == 0
        out = capsys.readouterr().out
        assert "Would purge 1" in out
        assert "2000-01-01.json" in out
        assert (log_dir / "2000-01-01.json").exists()

        assert main(["purge"]) == 0
        assert not (log_dir / "2000-01-01.json").exists()

    def test_reset_unknown_phase(self, env_hooks, capsys):
        _save(env_hooks, "a", Phase.REJECTED)
        assert main(["reset", "a", "--phase", "proofreading"]) == 2
        assert "Valid values" in capsys.readouterr().out
        assert env_hooks.store.require("a").phase == Phase.REJECTED
