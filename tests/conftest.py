import json

import pytest

from bluegreen.config import Settings
from bluegreen.errors import CommandError
from bluegreen.models import Color, ServiceTopology
from bluegreen.orchestrator import ColorLifecycleManager
from bluegreen.proxy import ConfigTest
from bluegreen.runtime import ContainerInfo

SHOP = {
    "service_name": "shop",
    "domain": "shop.example.com",
    "shared_dependencies": ["postgres"],
    "network": "nginx-network",
    "docker_compose_file": "docker-compose.blue.yml",
    "docker_project_base": "shop",
    "service_path": "null",
    "production_path": "null",
    "services": {
        "backend": {
            "container_name_base": "shop-backend",
            "container_port": 3001,
            "port": 3001,
            "health_endpoint": "/health",
            "health_timeout": 2,
            "health_retries": 3,
            "startup_time": 3,
        },
        "frontend": {
            "container_name_base": "shop-frontend",
            "container_port": 3000,
            "port": 3000,
            "health_endpoint": "/",
            "health_retries": 2,
        },
    },
}


class FakeRuntime:
    """In-memory stand-in for the docker CLI."""

    def __init__(self):
        self.containers = {}
        self.probe_script = {}
        self.health = {}
        self.compose_names = {}
        self.calls = []
        self.fail_remove = set()
        self.fail_build = set()
        self.fail_start = False

    def add(self, name, status="running", ports=()):
        self.containers[name] = ContainerInfo(name, status, list(ports))

    def register(self, topology: ServiceTopology):
        for color in Color:
            project = topology.project_name(color)
            for key, spec in topology.services.items():
                self.compose_names[(project, key)] = (spec.container_name(color), spec.port)

    def list_containers(self):
        return [ContainerInfo(c.name, c.status, list(c.ports)) for c in self.containers.values()]

    def start_compose_project(self, compose_file, project_name, services=(), cwd=None):
        self.calls.append(("start", project_name, tuple(services)))
        if self.fail_start:
            raise CommandError(f"up -d failed for {project_name}")
        for key in services:
            name, port = self.compose_names[(project_name, key)]
            self.add(name, "running", [port] if port else [])

    def stop_compose_project(self, compose_file, project_name, services=(), cwd=None):
        self.calls.append(("stop", project_name, tuple(services)))
        for key in services:
            name, _ = self.compose_names[(project_name, key)]
            self.containers.pop(name, None)

    def build_service(self, compose_file, project_name, service, cwd=None):
        self.calls.append(("build", project_name, service))
        if service in self.fail_build:
            raise CommandError(f"build failed for {service}")

    def exec_http_probe(self, container_name, port, path, timeout):
        self.calls.append(("probe", container_name, port, path))
        script = self.probe_script.get(container_name)
        if script:
            return script.pop(0) if len(script) > 1 else script[0]
        info = self.containers.get(container_name)
        return 200 if info and info.running else None

    def container_health(self, container_name):
        if container_name not in self.containers:
            return None
        return self.health.get(container_name, "none")

    def remove_container(self, container_name):
        self.calls.append(("remove", container_name))
        if container_name in self.fail_remove:
            raise CommandError(f"cannot remove {container_name}")
        self.containers.pop(container_name, None)

    def calls_of(self, kind):
        return [c for c in self.calls if c[0] == kind]


class FakeProxy:
    def __init__(self):
        self.test_results = []
        self.reload_failures = 0
        self.tests = 0
        self.reloads = 0

    def test_config(self):
        self.tests += 1
        if self.test_results:
            return self.test_results.pop(0)
        return ConfigTest(True, "nginx: configuration file /etc/nginx/nginx.conf test is successful")

    def reload(self):
        self.reloads += 1
        if self.reload_failures > 0:
            self.reload_failures -= 1
            raise CommandError("nginx -s reload failed")


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        PROJECT_ROOT=tmp_path,
        HTTPS_CHECK_ENABLED=False,
        PROBE_BACKOFF_SECONDS=0,
        METRICS_TEXTFILE=None,
    )


@pytest.fixture
def registry_doc():
    return json.loads(json.dumps(SHOP))


@pytest.fixture
def write_registry(settings):
    def _write(doc, name=None):
        settings.registry_dir.mkdir(parents=True, exist_ok=True)
        path = settings.registry_dir / f"{name or doc['service_name']}.json"
        path.write_text(json.dumps(doc))
        return path

    return _write


@pytest.fixture
def topology(registry_doc):
    return ServiceTopology.model_validate(registry_doc)


@pytest.fixture
def runtime(topology):
    fake = FakeRuntime()
    fake.register(topology)
    fake.add("db-server-postgres")
    fake.add("nginx-microservice", ports=[80, 443])
    return fake


@pytest.fixture
def proxy():
    return FakeProxy()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def manager(settings, runtime, proxy, sleeps, write_registry, registry_doc):
    write_registry(registry_doc)
    return ColorLifecycleManager(settings, runtime=runtime, proxy=proxy, sleep=sleeps.append)
