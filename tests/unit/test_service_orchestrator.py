# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Unit tests for start/stop ordering in the orchestrator, with in-memory
supervisors standing in for real processes.
"""
import pytest
from svcorch.MANAGERS.service_orchestrator import ServiceOrchestrator
from svcorch.MODELS.runtime_state import Phase, RuntimeState
from svcorch.MODELS.service_definition import LaunchTarget, ServiceSpec
from svcorch.REGISTRY.service_registry import ServiceRegistry
from svcorch.errors import CyclicDependencyError, LaunchError, StartupAbortedError, TeardownErrors


class FakeSupervisor:
    """Goes straight to Ready (or Failed) when started."""

    def __init__(self, spec, world):
        self.spec = spec
        self.world = world
        self.state = RuntimeState()
        self.cancelled = False
        self.adopted = False

    def start(self):
        if self.spec.name in self.world.running:
            self.adopted = True
            self.state = RuntimeState(phase=Phase.READY, pid=2000)
            return
        for dep in self.spec.depends_on:
            if self.world.supervisors[dep].state.phase is not Phase.READY:
                self.world.violations.append((self.spec.name, dep))
        self.world.events.append(('start', self.spec.name))
        if self.spec.name in self.world.failing:
            self.state = RuntimeState(phase=Phase.FAILED, last_error='exited with code 1')
        else:
            self.state = RuntimeState(phase=Phase.READY, pid=1000)

    def wait_settled(self, cancel=None, timeout=None):
        return self.state

    def cancel(self):
        self.cancelled = True

    def stop(self):
        self.world.events.append(('stop', self.spec.name))
        if self.spec.name in self.world.stop_errors:
            raise RuntimeError(f"cannot stop {self.spec.name}")
        self.state = RuntimeState(phase=Phase.STOPPED)

    def attach(self):
        if self.spec.name not in self.world.running:
            return False
        self.adopted = True
        self.state = RuntimeState(phase=Phase.READY, pid=2000)
        return True


class World:
    def __init__(self, graph, failing=(), stop_errors=(), running=()):
        self.events = []
        self.running = set(running)
        self.violations = []
        self.failing = set(failing)
        self.stop_errors = set(stop_errors)
        specs = [
            ServiceSpec(name=name, launch_target=LaunchTarget(command=('true',)), depends_on=tuple(deps))
            for name, deps in graph.items()
        ]
        self.orchestrator = ServiceOrchestrator(
            ServiceRegistry.from_specs(specs),
            supervisor_factory=lambda spec: FakeSupervisor(spec, self),
        )
        self.supervisors = self.orchestrator.supervisors


STACK = {
    'timescaledb': [],
    'promscale': ['timescaledb'],
    'prometheus': ['promscale'],
    'alertmanager': [],
    'node_exporter': [],
    'grafana': ['timescaledb', 'promscale'],
}


def test_start_all_respects_dependencies():
    world = World(STACK)
    order = world.orchestrator.start_all()
    assert order == ['alertmanager', 'node_exporter', 'timescaledb', 'promscale', 'grafana', 'prometheus']
    assert [name for kind, name in world.events] == order
    assert world.violations == []
    assert set(world.orchestrator.status().values()) == {Phase.READY}


def test_stop_all_is_reverse_of_start():
    world = World(STACK)
    order = world.orchestrator.start_all()
    world.events.clear()
    stopped = world.orchestrator.stop_all()
    assert stopped == list(reversed(order))
    assert world.events == [('stop', name) for name in reversed(order)]
    assert all(s.cancelled for s in world.supervisors.values())
    assert set(world.orchestrator.status().values()) == {Phase.STOPPED}


def test_failure_aborts_remaining_launches():
    world = World(STACK, failing={'promscale'})
    with pytest.raises(StartupAbortedError) as exc:
        world.orchestrator.start_all()
    assert exc.value.service == 'promscale'
    assert exc.value.reason == 'exited with code 1'

    status = world.orchestrator.status()
    assert status['timescaledb'] is Phase.READY
    assert status['promscale'] is Phase.FAILED
    assert status['grafana'] is Phase.PENDING
    assert status['prometheus'] is Phase.PENDING
    assert ('start', 'grafana') not in world.events


def test_dependency_failing_after_ready_blocks_dependents(monkeypatch):
    world = World({'db': [], 'migrate': [], 'web': ['db']})
    orchestrator = world.orchestrator

    original_start = FakeSupervisor.start

    def crash_db_on_migrate(self):
        original_start(self)
        if self.spec.name == 'migrate':
            world.supervisors['db'].state = RuntimeState(phase=Phase.FAILED, last_error='killed')

    monkeypatch.setattr(FakeSupervisor, "start", crash_db_on_migrate)
    with pytest.raises(StartupAbortedError) as exc:
        orchestrator.start_all()
    assert exc.value.service == 'db'
    assert 'killed' in exc.value.reason
    assert ('start', 'web') not in world.events


def test_stop_all_continues_past_errors():
    world = World(STACK, stop_errors={'promscale', 'alertmanager'})
    world.orchestrator.start_all()
    with pytest.raises(TeardownErrors) as exc:
        world.orchestrator.stop_all()
    assert set(exc.value.errors) == {'promscale', 'alertmanager'}
    assert len([e for e in world.events if e[0] == 'stop']) == len(STACK)


def test_stop_all_only_touches_started_services():
    world = World(STACK, failing={'timescaledb'})
    with pytest.raises(StartupAbortedError):
        world.orchestrator.start_all()
    assert world.orchestrator.stop_all() == ['timescaledb', 'node_exporter', 'alertmanager']


def test_cycle_fails_before_any_launch():
    world = World({'A': ['B'], 'B': ['A'], 'C': []})
    with pytest.raises(CyclicDependencyError):
        world.orchestrator.start_all()
    assert world.events == []


def test_status_before_start():
    world = World({'a': [], 'b': ['a']})
    assert world.orchestrator.status() == {'a': Phase.PENDING, 'b': Phase.PENDING}


def test_shutdown_request_aborts_start(monkeypatch):
    world = World({'a': [], 'b': ['a']})
    original_start = FakeSupervisor.start

    def start_then_interrupt(self):
        original_start(self)
        world.orchestrator.request_shutdown()

    monkeypatch.setattr(FakeSupervisor, "start", start_then_interrupt)
    with pytest.raises(StartupAbortedError) as exc:
        world.orchestrator.start_all()
    assert exc.value.service == 'a'
    assert exc.value.reason == 'shutdown requested'
    assert ('start', 'b') not in world.events


def test_start_all_adopts_services_already_running():
    world = World({'db': [], 'web': ['db']}, running={'db'})
    assert world.orchestrator.start_all() == ['db', 'web']
    assert world.orchestrator.already_running == ['db']
    assert ('start', 'db') not in world.events
    assert world.violations == []
    assert world.orchestrator.states()['db'].pid == 2000


def test_attach_all_supervises_only_running_services():
    world = World(STACK, running={'timescaledb', 'grafana'})
    assert world.orchestrator.attach_all() == ['timescaledb', 'grafana']
    assert set(world.supervisors) == {'timescaledb', 'grafana'}
    assert world.orchestrator.status()['prometheus'] is Phase.PENDING
    assert world.orchestrator.stop_all() == ['grafana', 'timescaledb']


def test_network_failure_names_the_network(monkeypatch):
    specs = [
        ServiceSpec(name='web', launch_target=LaunchTarget(image='nginx:alpine')),
        ServiceSpec(name='api', launch_target=LaunchTarget(command=('true',))),
    ]
    events = []
    orchestrator = ServiceOrchestrator(
        ServiceRegistry.from_specs(specs),
        supervisor_factory=lambda spec: events.append(spec.name),
    )

    def fail():
        raise LaunchError(f"Cannot create network {orchestrator.network_manager.network_name}: denied")

    monkeypatch.setattr(orchestrator.network_manager, "ensure_network", fail)
    with pytest.raises(LaunchError, match="default_default"):
        orchestrator.start_all()
    assert events == []
