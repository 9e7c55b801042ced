import sys
import time

from svcorch.MANAGERS.service_orchestrator import ServiceOrchestrator
from svcorch.MODELS.orchestration_config import OrchestratorSettings
from svcorch.MODELS.runtime_state import Phase
from svcorch.MODELS.service_definition import LaunchTarget, ServiceSpec
from svcorch.REGISTRY.service_registry import ServiceRegistry
from svcorch.RUNNERS.dependency_resolver import DependencyResolver


def test_stress_orchestration(tmp_path):
    """
    Stress test by orchestrating 30 real services, each depending on the
    previous three.
    """
    specs = []
    for i in range(30):
        name = f"service_{i:02d}"
        specs.append(ServiceSpec(
            name=name,
            launch_target=LaunchTarget(command=(sys.executable, "-c", "import time; time.sleep(60)")),
            depends_on=tuple(f"service_{j:02d}" for j in range(max(0, i - 3), i)),
        ))

    settings = OrchestratorSettings(stop_grace_period=2.0)
    orchestrator = ServiceOrchestrator(ServiceRegistry.from_specs(specs), settings, base_dir=str(tmp_path))

    start_time = time.time()
    try:
        order = orchestrator.start_all()
        print(f"Started 30 services in {time.time() - start_time:.2f}s")
        assert order == [spec.name for spec in specs]
        assert set(orchestrator.status().values()) == {Phase.READY}
    finally:
        stopped = orchestrator.stop_all()

    assert stopped == list(reversed(order))
    assert set(orchestrator.status().values()) == {Phase.STOPPED}


def test_resolve_large_graph():
    """
    Resolution of a wide, deep graph stays fast and deterministic.
    """
    specs = []
    for layer in range(50):
        for k in range(40):
            deps = tuple(f"l{layer - 1:02d}_{m:02d}" for m in range(40) if layer and m % 7 == k % 7)
            specs.append(ServiceSpec(
                name=f"l{layer:02d}_{k:02d}",
                launch_target=LaunchTarget(command=("true",)),
                depends_on=deps,
            ))
    registry = ServiceRegistry.from_specs(reversed(specs))

    start_time = time.time()
    order = DependencyResolver().resolve(registry)
    assert time.time() - start_time < 5

    position = {name: i for i, name in enumerate(order)}
    assert len(order) == 2000
    for spec in specs:
        for dep in spec.depends_on:
            assert position[dep] < position[spec.name]
    assert order == DependencyResolver().resolve(ServiceRegistry.from_specs(specs))
