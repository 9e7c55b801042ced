from svcorch.MODELS.service_definition import (
    LaunchTarget,
    PortMapping,
    Protocol,
    ServiceSpec,
    VolumeMount,
)
from svcorch.RUNNERS.launch_command import LaunchCommandBuilder


def test_command_target_merges_entrypoint_and_command():
    spec = ServiceSpec(
        name='worker',
        launch_target=LaunchTarget(entrypoint=('python', '-m'), command=('worker', '--fast')),
    )
    assert LaunchCommandBuilder('proj').build(spec) == ['python', '-m', 'worker', '--fast']


def test_image_target_runs_through_docker():
    spec = ServiceSpec(
        name='timescaledb',
        launch_target=LaunchTarget(image='timescale/timescaledb-ha:pg14-latest'),
        ports=(
            PortMapping(host_port=5432, container_port=5432),
            PortMapping(container_port=8125, protocol=Protocol.UDP),
            PortMapping(host_ip='127.0.0.1', host_port=9000, container_port=9000),
        ),
        env={'POSTGRES_PASSWORD': 'password'},
        volumes=(VolumeMount(source='data', target='/var/lib/postgresql/data', read_only=True),),
    )
    builder = LaunchCommandBuilder('stack', network='stack_default')
    argv = builder.build(
        spec,
        env_keys=['POSTGRES_USER', 'POSTGRES_PASSWORD'],
        volume_sources=['/srv/stack/data'],
    )
    assert argv == [
        'docker', 'run', '--rm', '--name', 'stack_timescaledb',
        '--network', 'stack_default', '--network-alias', 'timescaledb',
        '-p', '5432:5432/tcp',
        '-p', '8125/udp',
        '-p', '127.0.0.1:9000:9000/tcp',
        '-e', 'POSTGRES_PASSWORD',
        '-e', 'POSTGRES_USER',
        '-v', '/srv/stack/data:/var/lib/postgresql/data:ro',
        'timescale/timescaledb-ha:pg14-latest',
    ]
    # Secret values never appear on the command line.
    assert 'password' not in ' '.join(argv)


def test_image_entrypoint_override():
    spec = ServiceSpec(
        name='prometheus',
        launch_target=LaunchTarget(
            image='prom/prometheus',
            entrypoint=('/bin/prometheus', '--web.enable-lifecycle'),
            command=('--config.file=/etc/prometheus/prometheus.yml',),
            working_dir='/prometheus',
        ),
    )
    argv = LaunchCommandBuilder('p', docker_binary='podman').build(spec)
    assert argv[:2] == ['podman', 'run']
    image_index = argv.index('prom/prometheus')
    assert argv[image_index - 2:image_index] == ['--entrypoint', '/bin/prometheus']
    assert argv[image_index + 1:] == ['--web.enable-lifecycle', '--config.file=/etc/prometheus/prometheus.yml']
    assert argv[argv.index('-w') + 1] == '/prometheus'
