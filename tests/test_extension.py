from types import SimpleNamespace

import pytest

from agent_hires.scheduler import SchedulerRuntime, scheduler
from agent_hires.scheduler.errors import SchedulerConfigurationError
from agent_hires.scheduler.extension import SchedulerExtensionOptions
from agent_hires.scheduler.store import MemorySchedulerStore


def test_build_reserves_the_scheduler_slot():
    ext = scheduler()
    assert ext.name == "scheduler"
    assert ext.build() == {"scheduler": None}


@pytest.mark.parametrize(
    "host, message",
    [
        (SimpleNamespace(payments=object()), "A2A runtime missing"),
        (SimpleNamespace(a2a=object()), "Payments runtime missing"),
    ],
)
def test_on_build_requires_a2a_and_payments(host, message):
    with pytest.raises(SchedulerConfigurationError, match=message):
        scheduler().on_build(host)


def test_on_build_attaches_a_runtime_with_defaults():
    host = SimpleNamespace(a2a=object(), payments=object())

    runtime = scheduler().on_build(host)

    assert isinstance(runtime, SchedulerRuntime)
    assert host.scheduler is runtime
    assert isinstance(runtime.store, MemorySchedulerStore)
    assert runtime.lease_ms == 60_000


def test_on_build_passes_options_through(store, invoke, clock):
    host = SimpleNamespace(a2a=object(), payments=object())
    options = SchedulerExtensionOptions(store=store, invoke=invoke, clock=clock, lease_ms=5_000, max_due_batch=7)

    runtime = scheduler(options).on_build(host)

    assert runtime.store is store
    assert runtime.lease_ms == 5_000
    assert runtime.max_due_batch == 7
    assert runtime.default_max_retries == 3
    assert runtime.now() == clock()
