from datetime import datetime

import pytest

from backup.errors import RestoreFailed
from backup.restore import RESTORE_STEPS, RestoreCoordinator
from backup.types import Chain, EntryKind, EntryState

from conftest import FakeServer, option

T0 = datetime(2025, 3, 2, 1, 0, 0)


def _prepared_chain(catalog, seed):
    full = seed(EntryKind.FULL, T0)
    full = catalog.update_state(full.id, EntryState.PREPARED)
    return Chain((full,))


def _coordinator(config, catalog, runner, logger, server, confirm=lambda prompt: True):
    return RestoreCoordinator(config, catalog, runner, logger=logger, server=server, confirm=confirm)


def test_restore_runs_every_step_in_order(config, catalog, seed, runner, logger):
    chain = _prepared_chain(catalog, seed)
    datadir = config.connection.datadir
    datadir.mkdir(parents=True)
    (datadir / "stale.frm").write_text("old", encoding="utf-8")
    (datadir / "schema").mkdir()
    server = FakeServer()

    result = _coordinator(config, catalog, runner, logger, server).restore(chain, force=True)

    assert result.steps == list(RESTORE_STEPS)
    assert server.calls == ["stop", "start", "wait_healthy"]
    assert list(datadir.iterdir()) == []
    assert runner.labels() == ["copy-back", "chown"]
    copy_back = runner.labelled("copy-back")[0].command
    assert option(copy_back, "target-dir") == str(chain.full.path)
    assert option(copy_back, "datadir") == str(datadir)
    assert runner.labelled("chown")[0].command.args == ("-R", "mysql:mysql", str(datadir))
    assert catalog.get(chain.target.id).state == EntryState.RESTORED


def test_declined_confirmation_stops_before_the_server_is_touched(config, catalog, seed, runner, logger):
    chain = _prepared_chain(catalog, seed)
    datadir = config.connection.datadir
    datadir.mkdir(parents=True)
    (datadir / "ibdata1").write_text("live", encoding="utf-8")
    server = FakeServer()
    prompts = []

    def decline(prompt):
        prompts.append(prompt)
        return False

    with pytest.raises(RestoreFailed) as excinfo:
        _coordinator(config, catalog, runner, logger, server, confirm=decline).restore(chain)

    assert excinfo.value.step == "confirm"
    assert len(prompts) == 1
    assert server.calls == []
    assert (datadir / "ibdata1").exists()


def test_empty_datadir_needs_no_confirmation(config, catalog, seed, runner, logger):
    chain = _prepared_chain(catalog, seed)

    def refuse(prompt):  # pragma: no cover - must not be called
        raise AssertionError("confirmation requested for an empty data directory")

    result = _coordinator(config, catalog, runner, logger, FakeServer(), confirm=refuse).restore(chain)
    assert result.steps[-1] == "health_check"


@pytest.mark.parametrize(
    "server, failing_step",
    [
        (FakeServer(stop_ok=False), "stop_server"),
        (FakeServer(start_ok=False), "start_server"),
        (FakeServer(healthy=False), "health_check"),
    ],
)
def test_server_failures_name_the_step(config, catalog, seed, runner, logger, server, failing_step):
    chain = _prepared_chain(catalog, seed)
    with pytest.raises(RestoreFailed) as excinfo:
        _coordinator(config, catalog, runner, logger, server).restore(chain, force=True)
    assert excinfo.value.step == failing_step
    assert catalog.get(chain.target.id).state == EntryState.PREPARED


def test_copy_back_failure_leaves_server_stopped(config, catalog, seed, runner, logger):
    chain = _prepared_chain(catalog, seed)
    runner.fail("copy-back", stderr="disk full")
    server = FakeServer()

    with pytest.raises(RestoreFailed) as excinfo:
        _coordinator(config, catalog, runner, logger, server).restore(chain, force=True)

    assert excinfo.value.step == "copy_back"
    assert "disk full" in str(excinfo.value)
    assert server.calls == ["stop"]
    assert runner.labelled("chown") == []


def test_unprepared_chain_is_not_copied_back(config, catalog, seed, runner, logger):
    full = seed(EntryKind.FULL, T0)
    with pytest.raises(RestoreFailed) as excinfo:
        _coordinator(config, catalog, runner, logger, FakeServer()).restore(Chain((full,)), force=True)
    assert excinfo.value.step == "copy_back"
    assert runner.calls == []


def test_dry_run_reports_plan_only(make_config, catalog, seed, runner, logger):
    config = make_config({"dry_run": True})
    chain = _prepared_chain(catalog, seed)
    server = FakeServer()
    result = _coordinator(config, catalog, runner, logger, server).restore(chain)
    assert result.dry_run is True
    assert server.calls == []
    assert runner.calls == []
