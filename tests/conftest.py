import pytest

from converge.adapters import AdapterRegistry, InMemoryAdapter
from converge.executor import ApplyExecutor
from converge.schemas import DesiredState, ResourceKind, ResourceSpec
from converge.state_store import InMemoryStateStore


class FakeClock:
    """Deterministic clock whose sleep() advances time instantly."""

    def __init__(self, start: float = 1_000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def make_spec(name, kind=ResourceKind.NETWORK, depends_on=(), **config):
    return ResourceSpec(kind=kind, name=name, config=config, depends_on=tuple(depends_on))


def make_desired(*specs, name="test"):
    return DesiredState(name=name, resources=tuple(specs))


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Keep tests away from the real ~/.converge and AWS environment."""
    monkeypatch.setenv("CONVERGE_HOME", str(tmp_path / "home"))
    for var in ("CONVERGE_CONFIG", "CONVERGE_STATE_PATH", "AWS_REGION", "AWS_DEFAULT_REGION"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def store(fake_clock):
    return InMemoryStateStore(clock=fake_clock, sleep=fake_clock.sleep)


@pytest.fixture
def adapters():
    return AdapterRegistry.create_in_memory()


@pytest.fixture
def network_adapter(adapters) -> InMemoryAdapter:
    return adapters.get(ResourceKind.NETWORK)


@pytest.fixture
def token(store):
    return store.acquire_lock("pytest", ttl=600)


@pytest.fixture
def make_executor(store, adapters, token, fake_clock):
    """Factory for executors with instant backoff and readiness polling."""

    def factory(registry=None, **overrides):
        options = {
            "concurrency": 1,
            "max_attempts": 3,
            "backoff_seconds": 0,
            "ready_timeout": 30,
            "poll_interval": 1,
            "clock": fake_clock,
            "sleep": fake_clock.sleep,
        }
        options.update(overrides)
        return ApplyExecutor(store, registry or adapters, token, **options)

    return factory
