from __future__ import annotations

import asyncio

import allure
import pytest

from conftest import SCAN_TARGETS, FakeDriver, build_manager, failed, ok
from ecm_harvest.config import ImportSettings
from ecm_harvest.dispatch.completion import CompletionRouter
from ecm_harvest.dispatch.models import TASK_DISCOVER, TASK_DISCOVER_CHILDREN
from ecm_harvest.dispatch.routing import AgentCatalog
from ecm_harvest.error_log import ErrorRecorder, Severity
from ecm_harvest.errors import LockAlreadyHeld, OriginatorUnreachable, ProtocolViolation
from ecm_harvest.events import ImportCompletedEvent, SelectionNeededEvent
from ecm_harvest.importer.configs import FOLDER_CONFIGS_KEY, FolderConfigRepository
from ecm_harvest.importer.state import (
    IMPORT_STATE_KEY,
    FoundFolder,
    ImportStage,
    ImportState,
    MonthlyLink,
)
from ecm_harvest.importer.workflow import NOTIFICATION_TITLE, ImportWorkflow
from ecm_harvest.locks import LockName, LockRegistry
from ecm_harvest.storage.volatile import MemoryStore

pytestmark = [
    allure.epic("Folder Import"),
    allure.feature("Resumable Import Workflow"),
]

MAIL = FoundFolder(name="Inbound Mail", url="https://ecm.example.com/documents/fA1")
ARCHIVE = FoundFolder(name="Archive", url="https://ecm.example.com/documents/fB1")
MINUTES = FoundFolder(name="Minutes", url="https://ecm.example.com/documents/fC1")


def _folders(*folders: FoundFolder) -> dict:
    return ok({"folders": [folder.to_dict() for folder in folders]})


def _months(*months: tuple[int, int]) -> dict:
    return ok(
        {
            "monthly": [
                {"year": year, "month": month, "url": f"https://ecm.example.com/m/{year}-{month}"}
                for year, month in months
            ],
        },
    )


class _Notifier:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, Severity]] = []

    def notify(self, title: str, message: str, severity: Severity) -> None:
        self.sent.append((title, message, severity))


class _Originator:
    def __init__(self, *, unreachable: bool = False) -> None:
        self.unreachable = unreachable
        self.messages: list[tuple[str, dict]] = []

    async def send(self, originator_ref: str, message: dict) -> None:
        if self.unreachable:
            raise OriginatorUnreachable(f"tab {originator_ref} closed")
        self.messages.append((originator_ref, message))


class _ErrorSink:
    def __init__(self) -> None:
        self.records: list[dict] = []

    def add_error_log(self, *, message, severity, category, details=None) -> None:
        self.records.append(
            {"message": message, "severity": severity, "category": category, "details": details},
        )


class _ExecutionLog:
    def __init__(self) -> None:
        self.entries: list[tuple[str, str, str]] = []

    def add_execution_log(self, *, folder: str, script: str, status: str) -> None:
        self.entries.append((folder, script, status))


class _FlakyStore(MemoryStore):
    """Fails the listed import-state writes (1-based)."""

    def __init__(self, failing_writes: set[int]) -> None:
        super().__init__()
        self.failing_writes = failing_writes
        self.writes = 0

    def set(self, key, value) -> None:
        if key == IMPORT_STATE_KEY:
            self.writes += 1
            if self.writes in self.failing_writes:
                raise OSError("quota exceeded")
        super().set(key, value)


class _BrokenDurable(MemoryStore):
    def set(self, key, value) -> None:
        raise OSError("read-only database")


def _workflow(  # noqa: PLR0913
    driver: FakeDriver,
    *,
    volatile: MemoryStore | None = None,
    durable: MemoryStore | None = None,
    scan_targets: tuple[str, ...] = SCAN_TARGETS,
    notifier=None,
    originator=None,
    events: list | None = None,
    error_sink=None,
    execution_log=None,
) -> ImportWorkflow:
    volatile = volatile if volatile is not None else MemoryStore()
    return ImportWorkflow(
        volatile=volatile,
        locks=LockRegistry(volatile),
        context_manager=build_manager(driver),
        agents=AgentCatalog(default_template="agent {task_file}"),
        configs=FolderConfigRepository(durable if durable is not None else MemoryStore()),
        settings=ImportSettings(scan_targets=scan_targets),
        execution_log=execution_log,
        errors=ErrorRecorder(error_sink),
        notifier=notifier or _Notifier(),
        originator=originator,
        on_event=events.append if events is not None else None,
    )


def _scan_replies() -> dict:
    return {
        SCAN_TARGETS[0]: _folders(MAIL, ARCHIVE),
        SCAN_TARGETS[1]: failed("login page shown"),
        SCAN_TARGETS[2]: _folders(MINUTES, MAIL),
    }


def test_scan_visits_every_target_once_and_waits_for_selection() -> None:
    driver = FakeDriver(CompletionRouter(), _scan_replies())
    events: list = []
    workflow = _workflow(driver, events=events)

    state = asyncio.run(workflow.start("tab-7"))

    assert driver.targets_sent == list(SCAN_TARGETS)
    assert {descriptor.task for descriptor in driver.sent} == {TASK_DISCOVER}
    assert state.stage is ImportStage.AWAITING_SELECTION
    assert state.found_items == [MAIL, ARCHIVE, MINUTES]
    assert state.errors == [f"Error scanning {SCAN_TARGETS[1]}: login page shown"]
    assert state.cursor == 3
    assert workflow.load_state() == state
    assert workflow.locks.is_held(LockName.OBJECTIVE_IMPORT)
    assert events == [
        SelectionNeededEvent(found_items=[MAIL, ARCHIVE, MINUTES], errors=state.errors),
    ]
    assert driver.open_context_ids == set()


def test_bare_list_discovery_payload_is_accepted() -> None:
    driver = FakeDriver(
        CompletionRouter(),
        default_reply=ok([MAIL.to_dict()]),
    )

    state = asyncio.run(_workflow(driver, scan_targets=SCAN_TARGETS[:1]).start())

    assert state.found_items == [MAIL]
    assert state.errors == []


def test_malformed_discovery_payload_is_a_scan_error() -> None:
    driver = FakeDriver(CompletionRouter(), default_reply=ok({"folders": [{"name": "x"}]}))

    state = asyncio.run(_workflow(driver, scan_targets=SCAN_TARGETS[:1]).start())

    assert state.stage is ImportStage.AWAITING_SELECTION
    assert state.found_items == []
    assert len(state.errors) == 1
    assert state.errors[0].startswith(f"Error scanning {SCAN_TARGETS[0]}: ")


def test_selection_expands_months_and_stores_configs() -> None:
    replies = {
        **_scan_replies(),
        MAIL.url: _months((2026, 7), (2026, 8), (2026, 9), (2026, 9)),
        ARCHIVE.url: failed("folder is empty"),
    }
    driver = FakeDriver(CompletionRouter(), replies)
    durable = MemoryStore()
    notifier = _Notifier()
    execution_log = _ExecutionLog()
    events: list = []
    workflow = _workflow(
        driver,
        durable=durable,
        notifier=notifier,
        events=events,
        execution_log=execution_log,
    )

    async def scenario():
        await workflow.start()
        return await workflow.submit_selection([MAIL, ARCHIVE.to_dict(), MAIL])

    state = asyncio.run(scenario())

    children = [item for item in driver.sent if item.task == TASK_DISCOVER_CHILDREN]
    assert [descriptor.target for descriptor in children] == [MAIL.url, ARCHIVE.url]
    assert children[0].parent_label == "Inbound Mail"
    assert state.stage is ImportStage.DONE
    assert state.success is True
    assert [config.name for config in state.generated_configs] == [
        "Inbound Mail - Jul 2026",
        "Inbound Mail - Aug 2026",
        "Inbound Mail - Sep 2026",
    ]
    assert all(config.script == "A" for config in state.generated_configs)
    assert len(state.errors) == 2
    assert state.errors[1] == "Error scanning monthly links for Archive: folder is empty"
    assert [raw["name"] for raw in durable.get(FOLDER_CONFIGS_KEY)] == [
        "Inbound Mail - Jul 2026",
        "Inbound Mail - Aug 2026",
        "Inbound Mail - Sep 2026",
    ]
    assert workflow.load_state() is None
    assert workflow.locks.is_held(LockName.OBJECTIVE_IMPORT) is False
    assert isinstance(events[-1], ImportCompletedEvent)
    assert events[-1].to_message()["action"] == "import_complete"
    assert notifier.sent == [
        (
            NOTIFICATION_TITLE,
            "Objective import complete. Added 3 configurations. 2 errors.",
            Severity.WARNING,
        ),
    ]
    assert execution_log.entries == [
        ("SYSTEM", NOTIFICATION_TITLE, "Finished. Added: 3. Errors: 2."),
    ]


def test_second_import_of_same_months_adds_nothing() -> None:
    replies = {SCAN_TARGETS[0]: _folders(MAIL), MAIL.url: _months((2026, 9))}
    durable = MemoryStore()

    async def scenario():
        results = []
        for _ in range(2):
            driver = FakeDriver(CompletionRouter(), replies)
            workflow = _workflow(driver, durable=durable, scan_targets=SCAN_TARGETS[:1])
            await workflow.start()
            results.append(await workflow.submit_selection([MAIL]))
        return results

    first, second = asyncio.run(scenario())

    assert len(first.generated_configs) == 1
    assert second.generated_configs == []
    assert len(durable.get(FOLDER_CONFIGS_KEY)) == 1


def test_unknown_month_number_gets_generic_label() -> None:
    replies = {SCAN_TARGETS[0]: _folders(MAIL), MAIL.url: _months((2026, 13))}
    workflow = _workflow(FakeDriver(CompletionRouter(), replies), scan_targets=SCAN_TARGETS[:1])

    async def scenario():
        await workflow.start()
        return await workflow.submit_selection([MAIL])

    state = asyncio.run(scenario())

    assert [config.name for config in state.generated_configs] == ["Inbound Mail - M13 2026"]


def test_empty_selection_finishes_without_dispatching() -> None:
    driver = FakeDriver(CompletionRouter(), _scan_replies())
    workflow = _workflow(driver)

    async def scenario():
        await workflow.start()
        return await workflow.submit_selection([])

    state = asyncio.run(scenario())

    assert state.stage is ImportStage.DONE
    assert state.generated_configs == []
    assert len(driver.sent) == len(SCAN_TARGETS)


def test_selection_outside_awaiting_stage_is_rejected() -> None:
    workflow = _workflow(FakeDriver(CompletionRouter()))

    with pytest.raises(ProtocolViolation, match="idle"):
        asyncio.run(workflow.submit_selection([MAIL]))

    state = ImportState.initial(list(SCAN_TARGETS))
    state.stage = ImportStage.PROCESSING_MONTHLY
    workflow.volatile.set(IMPORT_STATE_KEY, state.to_dict())

    with pytest.raises(ProtocolViolation, match="processing_monthly"):
        asyncio.run(workflow.submit_selection([MAIL]))
    assert workflow.load_state().stage is ImportStage.PROCESSING_MONTHLY


def test_selection_of_unknown_or_malformed_folder_is_rejected() -> None:
    driver = FakeDriver(CompletionRouter(), _scan_replies())
    workflow = _workflow(driver)
    asyncio.run(workflow.start())
    stranger = FoundFolder(name="Other", url="https://ecm.example.com/documents/fZ9")

    with pytest.raises(ProtocolViolation, match="not found by the scan"):
        asyncio.run(workflow.submit_selection([MAIL, stranger]))
    with pytest.raises(ProtocolViolation, match="Malformed"):
        asyncio.run(workflow.submit_selection([{"name": "no url"}]))

    state = workflow.load_state()
    assert state.stage is ImportStage.AWAITING_SELECTION
    assert state.selected_subset == []


def test_start_while_locked_leaves_state_untouched() -> None:
    volatile = MemoryStore()
    driver = FakeDriver(CompletionRouter(), _scan_replies())
    workflow = _workflow(driver, volatile=volatile)
    workflow.locks.try_acquire(LockName.BATCH_PROCESSING)

    with pytest.raises(LockAlreadyHeld) as excinfo:
        asyncio.run(workflow.start())

    assert excinfo.value.holder == LockName.BATCH_PROCESSING.value
    assert workflow.load_state() is None
    assert driver.opened == []
    assert workflow.locks.is_held(LockName.OBJECTIVE_IMPORT) is False


def test_second_start_during_selection_is_refused() -> None:
    volatile = MemoryStore()
    workflow = _workflow(FakeDriver(CompletionRouter(), _scan_replies()), volatile=volatile)
    first = asyncio.run(workflow.start())

    with pytest.raises(LockAlreadyHeld):
        asyncio.run(workflow.start())

    assert workflow.load_state() == first


def test_new_workflow_resumes_scan_from_persisted_cursor() -> None:
    volatile = MemoryStore()
    LockRegistry(volatile).try_acquire(LockName.OBJECTIVE_IMPORT)
    state = ImportState.initial(list(SCAN_TARGETS))
    state.cursor = 1
    state.found_items = [MAIL]
    volatile.set(IMPORT_STATE_KEY, state.to_dict())
    driver = FakeDriver(
        CompletionRouter(),
        {SCAN_TARGETS[1]: _folders(ARCHIVE), SCAN_TARGETS[2]: _folders(MINUTES)},
    )

    resumed = asyncio.run(_workflow(driver, volatile=volatile).run())

    assert driver.targets_sent == [SCAN_TARGETS[1], SCAN_TARGETS[2]]
    assert resumed.stage is ImportStage.AWAITING_SELECTION
    assert resumed.found_items == [MAIL, ARCHIVE, MINUTES]


def test_new_workflow_resumes_monthly_expansion() -> None:
    volatile = MemoryStore()
    state = ImportState.initial(list(SCAN_TARGETS))
    state.stage = ImportStage.PROCESSING_MONTHLY
    state.found_items = [MAIL, ARCHIVE]
    state.selected_subset = [MAIL, ARCHIVE]
    state.total_to_process = 2
    state.cursor = 1
    state.processed_count = 1
    state.monthly_results = {"Inbound Mail": [MonthlyLink(2026, 9, "https://ecm.example.com/m/1")]}
    volatile.set(IMPORT_STATE_KEY, state.to_dict())
    driver = FakeDriver(CompletionRouter(), {ARCHIVE.url: _months((2026, 8))})

    finished = asyncio.run(_workflow(driver, volatile=volatile).run())

    assert driver.targets_sent == [ARCHIVE.url]
    assert finished.stage is ImportStage.DONE
    assert [config.name for config in finished.generated_configs] == [
        "Inbound Mail - Sep 2026",
        "Archive - Aug 2026",
    ]


def test_run_without_persisted_state_returns_none() -> None:
    assert asyncio.run(_workflow(FakeDriver(CompletionRouter())).run()) is None


def test_completion_goes_to_originator_when_reachable() -> None:
    originator = _Originator()
    notifier = _Notifier()
    replies = {SCAN_TARGETS[0]: _folders(MAIL), MAIL.url: _months((2026, 9))}
    workflow = _workflow(
        FakeDriver(CompletionRouter(), replies),
        scan_targets=SCAN_TARGETS[:1],
        originator=originator,
        notifier=notifier,
    )

    async def scenario():
        await workflow.start("tab-3")
        await workflow.submit_selection([MAIL])

    asyncio.run(scenario())

    assert notifier.sent == []
    assert len(originator.messages) == 1
    ref, message = originator.messages[0]
    assert ref == "tab-3"
    assert message["success"] is True
    assert message["error"] is None
    assert [folder["name"] for folder in message["folders"]] == ["Inbound Mail - Sep 2026"]


def test_unreachable_originator_falls_back_to_notification() -> None:
    notifier = _Notifier()
    replies = {SCAN_TARGETS[0]: _folders(MAIL), MAIL.url: _months((2026, 9))}
    workflow = _workflow(
        FakeDriver(CompletionRouter(), replies),
        scan_targets=SCAN_TARGETS[:1],
        originator=_Originator(unreachable=True),
        notifier=notifier,
    )

    async def scenario():
        await workflow.start("tab-3")
        await workflow.submit_selection([MAIL])

    asyncio.run(scenario())

    assert notifier.sent == [
        (NOTIFICATION_TITLE, "Objective import complete. Added 1 configurations.", Severity.INFO),
    ]


def test_state_write_failure_is_recorded_and_run_continues() -> None:
    error_sink = _ErrorSink()
    volatile = _FlakyStore(failing_writes={2})
    workflow = _workflow(
        FakeDriver(CompletionRouter(), _scan_replies()),
        volatile=volatile,
        error_sink=error_sink,
    )

    state = asyncio.run(workflow.start())

    assert state.stage is ImportStage.AWAITING_SELECTION
    assert workflow.load_state().stage is ImportStage.AWAITING_SELECTION
    critical = [record for record in error_sink.records if record["severity"] == "critical"]
    assert len(critical) == 1
    assert critical[0]["category"] == "storage"
    assert critical[0]["details"]["code"] == "persistence_write_failure"


def test_driver_exception_is_a_scan_error_and_scan_continues() -> None:
    def explode(_descriptor):
        raise OSError("No space left on device")

    driver = FakeDriver(
        CompletionRouter(),
        {SCAN_TARGETS[0]: explode, SCAN_TARGETS[2]: _folders(MINUTES)},
        default_reply=_folders(ARCHIVE),
    )
    workflow = _workflow(driver)

    state = asyncio.run(workflow.start())

    assert driver.targets_sent == list(SCAN_TARGETS)
    assert state.stage is ImportStage.AWAITING_SELECTION
    assert state.success is True
    assert state.errors == [f"Error scanning {SCAN_TARGETS[0]}: No space left on device"]
    assert state.found_items == [ARCHIVE, MINUTES]
    assert driver.open_context_ids == set()


def test_unexpected_step_error_ends_import_as_failed() -> None:
    volatile = MemoryStore()
    state = ImportState.initial(list(SCAN_TARGETS))
    state.stage = ImportStage.PROCESSING_MONTHLY
    state.found_items = [MAIL]
    state.selected_subset = [MAIL]
    state.total_to_process = 2
    state.cursor = 1
    state.processed_count = 1
    volatile.set(IMPORT_STATE_KEY, state.to_dict())
    notifier = _Notifier()
    workflow = _workflow(FakeDriver(CompletionRouter()), volatile=volatile, notifier=notifier)
    workflow.locks.try_acquire(LockName.OBJECTIVE_IMPORT)

    finished = asyncio.run(workflow.run())

    assert finished.stage is ImportStage.DONE
    assert finished.success is False
    assert finished.errors == [
        "Internal error during processing_monthly: list index out of range",
    ]
    assert workflow.load_state() is None
    assert workflow.locks.is_held(LockName.OBJECTIVE_IMPORT) is False
    title, message, severity = notifier.sent[0]
    assert title == NOTIFICATION_TITLE
    assert message.startswith("Objective import failed.")
    assert severity is Severity.ERROR


def test_resume_retakes_free_lock_and_continues_scan() -> None:
    volatile = MemoryStore()
    state = ImportState.initial(list(SCAN_TARGETS))
    state.cursor = 2
    volatile.set(IMPORT_STATE_KEY, state.to_dict())
    driver = FakeDriver(CompletionRouter(), {SCAN_TARGETS[2]: _folders(MINUTES)})
    workflow = _workflow(driver, volatile=volatile)

    resumed = asyncio.run(workflow.resume())

    assert driver.targets_sent == [SCAN_TARGETS[2]]
    assert resumed.stage is ImportStage.AWAITING_SELECTION
    assert workflow.locks.is_held(LockName.OBJECTIVE_IMPORT)
    assert workflow.running is False


def test_resume_refused_while_batch_holds_its_lock() -> None:
    volatile = MemoryStore()
    volatile.set(IMPORT_STATE_KEY, ImportState.initial(list(SCAN_TARGETS)).to_dict())
    driver = FakeDriver(CompletionRouter(), _scan_replies())
    workflow = _workflow(driver, volatile=volatile)
    workflow.locks.try_acquire(LockName.BATCH_PROCESSING)

    with pytest.raises(LockAlreadyHeld) as excinfo:
        asyncio.run(workflow.resume())

    assert excinfo.value.holder == LockName.BATCH_PROCESSING.value
    assert driver.opened == []
    assert workflow.locks.is_held(LockName.OBJECTIVE_IMPORT) is False
    assert workflow.load_state().stage is ImportStage.SCANNING_TYPES


def test_resume_while_import_is_running_is_refused() -> None:
    driver = FakeDriver(
        CompletionRouter(),
        {SCAN_TARGETS[0]: None},
        default_reply=_folders(MAIL),
    )
    workflow = _workflow(driver)

    async def scenario():
        started = asyncio.create_task(workflow.start())
        while not driver.sent:
            await asyncio.sleep(0)
        with pytest.raises(LockAlreadyHeld):
            await workflow.resume()
        with pytest.raises(LockAlreadyHeld):
            await workflow.run()
        return await started

    state = asyncio.run(scenario())

    assert driver.targets_sent == list(SCAN_TARGETS)
    assert state.stage is ImportStage.AWAITING_SELECTION
    assert state.errors[0].startswith(f"Error scanning {SCAN_TARGETS[0]}: No reply from agent")
    assert workflow.running is False


def test_resume_without_persisted_state_returns_none() -> None:
    workflow = _workflow(FakeDriver(CompletionRouter()))

    assert asyncio.run(workflow.resume()) is None
    assert workflow.locks.held_names() == []


def test_config_save_failure_marks_import_failed() -> None:
    replies = {SCAN_TARGETS[0]: _folders(MAIL), MAIL.url: _months((2026, 9))}
    error_sink = _ErrorSink()
    workflow = _workflow(
        FakeDriver(CompletionRouter(), replies),
        durable=_BrokenDurable(),
        scan_targets=SCAN_TARGETS[:1],
        error_sink=error_sink,
    )

    async def scenario():
        await workflow.start()
        return await workflow.submit_selection([MAIL])

    state = asyncio.run(scenario())

    assert state.success is False
    assert state.generated_configs == []
    assert state.errors == ["Error saving configs: read-only database"]
    assert any(record["category"] == "storage" for record in error_sink.records)


def test_state_round_trips_through_store_format() -> None:
    state = ImportState.initial(list(SCAN_TARGETS), "tab-1")
    state.found_items = [MAIL]
    state.monthly_results = {"Inbound Mail": [MonthlyLink(2026, 9, "https://ecm.example.com/m")]}
    state.errors = ["oops"]

    assert ImportState.from_dict(state.to_dict()) == state
