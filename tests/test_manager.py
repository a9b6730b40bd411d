"""Tests for the extension manager."""
import asyncio
import json
import tarfile
from unittest.mock import AsyncMock

import pytest

from dockhand.catalog.provider import CatalogProvider
from dockhand.core.actions import ActionKind
from dockhand.core.config import Features
from dockhand.core.errors import CreateError, EngineError
from dockhand.core.manager import SELF_UPDATE_EXIT_CODE, ExtensionManager
from dockhand.core.state_store import StateStore
from dockhand.engine.config_builder import ExtensionOptions
from dockhand.engine.lifecycle import ExtensionState
from dockhand.engine.logs import STDOUT

from conftest import frame


class Sink:
    def __init__(self):
        self.messages = []

    def __call__(self, message, is_error):
        self.messages.append((message, is_error))

    @property
    def errors(self):
        return [m for m, is_error in self.messages if is_error]

    def texts(self):
        return [m for m, _ in self.messages]


@pytest.fixture
def sink():
    return Sink()


@pytest.fixture
def manager(config, engine, catalog_document, sink):
    engine.publish("janedoe/deep-harmony", "1.2.0", "sha256:1")
    engine.publish("someone/web-radio", "latest", "sha256:1")
    engine.publish("someone/dockhand", "latest", "sha256:1")

    catalog = CatalogProvider(url="https://catalog.example.org/catalog.json", repos_dir=config.repos_dir)
    catalog.fetch = AsyncMock(return_value=json.dumps(catalog_document))
    return ExtensionManager(
        config,
        engine=engine,
        catalog=catalog,
        state=StateStore(config.state_file),
        status_sink=sink,
    )


async def started(manager):
    assert await manager.startup()
    await manager.queue.wait_idle()
    return manager


class TestStartup:

    @pytest.mark.asyncio
    async def test_catalog_loaded_on_startup(self, manager, sink):
        await started(manager)

        assert manager.catalog.loaded
        assert "Extension catalog loaded (v1.0.3)" in sink.texts()
        assert manager.get_status("dockhand-catalog").state == ExtensionState.INSTALLED
        assert not manager.containerized

    @pytest.mark.asyncio
    async def test_engine_unreachable_disables_queue(self, manager, engine, sink):
        engine.reachable = False

        assert not await manager.startup()

        assert len(sink.errors) == 1
        assert not manager.perform_action(ActionKind.INSTALL, "web-radio")
        assert manager.is_idle()

    @pytest.mark.asyncio
    async def test_containerized_detection(self, manager, engine):
        engine.add_container("dockhand", "someone/dockhand:latest")

        await started(manager)

        assert manager.containerized
        assert manager._bind_props("web-radio").volume_owner == "dockhand"


class TestInstall:

    @pytest.mark.asyncio
    async def test_install_then_start(self, manager, engine, sink):
        await started(manager)

        assert manager.perform_action(ActionKind.INSTALL, "web-radio")
        await manager.queue.wait_idle()

        assert manager.get_status("web-radio").state == ExtensionState.RUNNING
        texts = sink.texts()
        assert texts.index("Installing: web-radio...") < texts.index("Installed: web-radio (latest)")
        assert texts[-1] == "Started: web-radio"

    @pytest.mark.asyncio
    async def test_install_uses_declared_defaults_and_persists(self, manager, engine, config):
        await started(manager)

        manager.perform_action(ActionKind.INSTALL, "deep-harmony")
        await manager.queue.wait_idle()

        env = engine.containers["deep-harmony"]["Config"]["Env"]
        assert "HUB_HOST=192.168.1.10" in env
        assert StateStore(config.state_file).get_options("deep-harmony").env == {"HUB_HOST": "192.168.1.10"}
        assert (config.data_root / "binds" / "deep-harmony" / "home" / "node" / "config.json").exists()

    @pytest.mark.asyncio
    async def test_install_up_to_date_still_starts(self, manager, engine, sink):
        await started(manager)
        manager.perform_action(ActionKind.INSTALL, "web-radio")
        await manager.queue.wait_idle()
        manager.perform_action(ActionKind.STOP, "web-radio")
        await manager.queue.wait_idle()

        manager.perform_action(ActionKind.INSTALL, "web-radio")
        await manager.queue.wait_idle()

        assert "web-radio already up to date" in sink.texts()
        assert manager.get_status("web-radio").state == ExtensionState.RUNNING

    @pytest.mark.asyncio
    async def test_new_options_recreate_installed_extension(self, manager, engine, sink):
        await started(manager)
        manager.perform_action(ActionKind.INSTALL, "deep-harmony")
        await manager.queue.wait_idle()

        assert manager.perform_action(
            ActionKind.INSTALL, "deep-harmony", ExtensionOptions(env={"HUB_HOST": "10.0.0.99"}),
        )
        await manager.queue.wait_idle()

        assert len(engine.calls_to("create_container")) == 2
        assert "HUB_HOST=10.0.0.99" in engine.containers["deep-harmony"]["Config"]["Env"]
        assert manager.state.get_options("deep-harmony").env == {"HUB_HOST": "10.0.0.99"}
        assert "Installed: deep-harmony (1.2.0)" in sink.texts()
        assert manager.get_status("deep-harmony").state == ExtensionState.RUNNING

    @pytest.mark.asyncio
    async def test_up_to_date_install_keeps_stored_options(self, manager, engine):
        await started(manager)
        manager.perform_action(ActionKind.INSTALL, "deep-harmony")
        await manager.queue.wait_idle()
        manager.state.forget("deep-harmony")

        manager.perform_action(ActionKind.INSTALL, "deep-harmony")
        await manager.queue.wait_idle()

        assert len(engine.calls_to("create_container")) == 1
        assert manager.state.get_options("deep-harmony") is None

    @pytest.mark.asyncio
    async def test_unknown_extension_rejected(self, manager):
        await started(manager)

        assert not manager.perform_action(ActionKind.INSTALL, "nope")

    @pytest.mark.asyncio
    async def test_install_failure_reported(self, manager, engine, sink):
        await started(manager)
        engine.fail["create_container"] = CreateError("bad config")

        manager.perform_action(ActionKind.INSTALL, "web-radio")
        await manager.queue.wait_idle()

        assert sink.errors == ["Installation failed: web-radio\nbad config"]


class TestUpdate:

    async def installed(self, manager, name="web-radio"):
        await started(manager)
        manager.perform_action(ActionKind.INSTALL, name)
        await manager.queue.wait_idle()

    @pytest.mark.asyncio
    async def test_update_terminates_updates_and_restarts(self, manager, engine, sink):
        await self.installed(manager)
        engine.publish("someone/web-radio", "latest", "sha256:2")

        manager.perform_action(ActionKind.UPDATE, "web-radio")
        await manager.queue.wait_idle()

        texts = sink.texts()
        assert "Process terminated: web-radio" in texts
        assert "Updated: web-radio (latest)" in texts
        assert texts[-1] == "Started: web-radio"
        assert manager.get_status("web-radio").state == ExtensionState.RUNNING

    @pytest.mark.asyncio
    async def test_user_stopped_extension_stays_stopped(self, manager, engine):
        await self.installed(manager)
        manager.perform_action(ActionKind.STOP, "web-radio")
        await manager.queue.wait_idle()
        starts = len(engine.calls_to("start_container"))

        manager.perform_action(ActionKind.UPDATE, "web-radio")
        await manager.queue.wait_idle()

        assert len(engine.calls_to("start_container")) == starts
        assert manager.get_status("web-radio").state == ExtensionState.STOPPED

    @pytest.mark.asyncio
    async def test_failed_update_reports_once_and_falls_back(self, manager, engine, sink):
        await self.installed(manager)
        del engine.registry["someone/web-radio:latest"]
        starts = len(engine.calls_to("start_container"))

        manager.perform_action(ActionKind.UPDATE, "web-radio")
        await manager.queue.wait_idle()

        assert len([e for e in sink.errors if e.startswith("Update failed: web-radio")]) == 1
        # Fallback start of the untouched container
        assert len(engine.calls_to("start_container")) == starts + 1
        assert manager.get_status("web-radio").state == ExtensionState.RUNNING

    @pytest.mark.asyncio
    async def test_fallback_failure_suppressed(self, manager, engine, sink):
        await self.installed(manager)
        del engine.registry["someone/web-radio:latest"]
        engine.fail["start_container"] = EngineError("cannot start")

        manager.perform_action(ActionKind.UPDATE, "web-radio")
        await manager.queue.wait_idle()

        assert len(sink.errors) == 1
        assert sink.errors[0].startswith("Update failed: web-radio")

    @pytest.mark.asyncio
    async def test_update_learns_options_without_stored_state(self, manager, engine, config):
        await self.installed(manager, "deep-harmony")
        engine.containers["deep-harmony"]["Config"]["Env"] = ["TZ=UTC", "HUB_HOST=hub.lan"]
        manager.state.forget("deep-harmony")

        manager.perform_action(ActionKind.UPDATE, "deep-harmony")
        await manager.queue.wait_idle()

        stored = manager.state.state["extensions"]["deep-harmony"]
        assert stored["learned"] is True
        assert stored["options"]["env"] == {"HUB_HOST": "hub.lan"}
        assert "HUB_HOST=hub.lan" in engine.containers["deep-harmony"]["Config"]["Env"]


class TestRestart:

    @pytest.mark.asyncio
    async def test_restart_cycles_container(self, manager, engine, sink):
        await started(manager)
        manager.perform_action(ActionKind.INSTALL, "web-radio")
        await manager.queue.wait_idle()
        starts = len(engine.calls_to("start_container"))

        manager.perform_action(ActionKind.RESTART, "web-radio")
        await manager.queue.wait_idle()

        assert len(engine.calls_to("stop_container")) == 1
        assert len(engine.calls_to("start_container")) == starts + 1
        assert sink.texts()[-1] == "Restarted: web-radio"
        assert manager.get_status("web-radio").state == ExtensionState.RUNNING


class TestUninstall:

    @pytest.mark.asyncio
    async def test_install_then_uninstall_leaves_nothing(self, manager, engine, sink):
        await started(manager)
        manager.perform_action(ActionKind.INSTALL, "web-radio")
        await manager.queue.wait_idle()

        manager.perform_action(ActionKind.UNINSTALL, "web-radio")
        await manager.queue.wait_idle()

        assert "web-radio" not in engine.containers
        assert "someone/web-radio:latest" not in engine.images
        assert manager.get_status("web-radio").state == ExtensionState.NOT_INSTALLED
        assert manager.state.get_options("web-radio") is None
        texts = sink.texts()
        assert texts.index("Stopped: web-radio") < texts.index("Uninstalled: web-radio")


class TestUpdateAll:

    @pytest.mark.asyncio
    async def test_order_catalog_first_self_last(self, manager, engine):
        engine.add_container("dockhand", "someone/dockhand:latest")
        await started(manager)
        manager.perform_action(ActionKind.INSTALL, "web-radio")
        await manager.queue.wait_idle()

        queued = manager.update_all()

        assert queued[0] == "dockhand-catalog"
        assert queued[-1] == "dockhand"
        assert "web-radio" in queued
        assert manager.queue.pending()[-1].action == ActionKind.SELF_UPDATE
        await manager.queue.wait_idle()

    @pytest.mark.asyncio
    async def test_auto_update_off(self, manager):
        manager.config.features = Features(auto_update="off")
        await started(manager)

        assert manager.update_all() == []

    @pytest.mark.asyncio
    async def test_self_update_off(self, manager, engine):
        manager.config.features = Features(self_update="off")
        engine.add_container("dockhand", "someone/dockhand:latest")
        await started(manager)

        assert "dockhand" not in manager.update_all()
        assert not manager.perform_action(ActionKind.UPDATE, "dockhand")
        await manager.queue.wait_idle()


class TestSelfUpdate:

    @pytest.mark.asyncio
    async def test_newer_image_exits_with_66(self, manager, engine, sink):
        engine.add_container("dockhand", "someone/dockhand:latest")
        await started(manager)

        manager.perform_action(ActionKind.UPDATE, "dockhand")
        await manager.queue.wait_idle()

        assert manager.exit_code == SELF_UPDATE_EXIT_CODE
        assert "Updated: dockhand (latest)" in sink.texts()
        assert engine.calls_to("create_container") == []

    @pytest.mark.asyncio
    async def test_current_image_is_neutral(self, manager, engine, sink):
        engine.add_container("dockhand", "someone/dockhand:latest")
        engine.images["someone/dockhand:latest"] = "sha256:1"
        await started(manager)

        manager.perform_action(ActionKind.UPDATE, "dockhand")
        await manager.queue.wait_idle()

        assert manager.exit_code is None
        assert "dockhand already up to date" in sink.texts()
        assert sink.errors == []

    @pytest.mark.asyncio
    async def test_manager_restart_requests_shutdown(self, manager):
        await started(manager)

        assert manager.perform_action(ActionKind.RESTART, "dockhand")
        assert manager.exit_code == 0


class TestActions:

    @pytest.mark.asyncio
    async def test_not_installed(self, manager):
        await started(manager)

        action_set = manager.get_actions("deep-harmony")

        assert action_set.actions == [ActionKind.INSTALL]
        assert action_set.options.env == {"HUB_HOST": "192.168.1.10:Hub address"}

    @pytest.mark.asyncio
    async def test_running_extension(self, manager):
        await started(manager)
        manager.perform_action(ActionKind.INSTALL, "web-radio")
        await manager.queue.wait_idle()

        assert manager.get_actions("web-radio").actions == [
            ActionKind.UPDATE, ActionKind.UNINSTALL, ActionKind.RESTART, ActionKind.STOP,
        ]

    @pytest.mark.asyncio
    async def test_stopped_extension(self, manager):
        await started(manager)
        manager.perform_action(ActionKind.INSTALL, "web-radio")
        await manager.queue.wait_idle()
        manager.perform_action(ActionKind.STOP, "web-radio")
        await manager.queue.wait_idle()

        assert manager.get_actions("web-radio").actions == [
            ActionKind.UPDATE, ActionKind.UNINSTALL, ActionKind.START,
        ]

    @pytest.mark.asyncio
    async def test_catalog_and_manager(self, manager, engine):
        engine.add_container("dockhand", "someone/dockhand:latest")
        await started(manager)

        assert manager.get_actions("dockhand-catalog").actions == [ActionKind.UPDATE]
        assert manager.get_actions("dockhand").actions == [ActionKind.UPDATE, ActionKind.RESTART]

    @pytest.mark.asyncio
    async def test_details(self, manager):
        await started(manager)

        assert manager.get_details("deep-harmony")["author"] == "Jane Doe"
        assert manager.get_details("nope") is None


class TestCollectLogs:

    @pytest.mark.asyncio
    async def test_archive_holds_per_extension_logs(self, manager, engine, config, tmp_path):
        await started(manager)
        manager.perform_action(ActionKind.INSTALL, "web-radio")
        await manager.queue.wait_idle()
        engine.logs["web-radio"] = frame(STDOUT, b"tuned in\n")

        archive = await manager.collect_logs(tmp_path / "out" / "logs.tar.gz")

        assert (config.log_dir / "web-radio.log").read_bytes() == b"tuned in\n"
        with tarfile.open(archive, "r:gz") as tar:
            assert f"{config.log_dir.name}/web-radio.log" in tar.getnames()


class TestShutdown:

    def test_request_shutdown_persists_state(self, manager, config):
        manager.state.set_options("web-radio", ExtensionOptions(env={"A": "1"}))

        manager.request_shutdown()

        assert config.state_file.exists()
        assert manager.exit_code == 0

    @pytest.mark.asyncio
    async def test_serve_returns_requested_exit_code(self, manager):
        asyncio.get_running_loop().call_later(0.05, manager.request_shutdown, SELF_UPDATE_EXIT_CODE)

        assert await manager.serve() == SELF_UPDATE_EXIT_CODE
        assert manager.catalog.loaded
