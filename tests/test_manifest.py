import pytest

from rollctl.errors import InvalidManifest
from rollctl.manifest import (
    HealthCheckSpec,
    PortBinding,
    ReleaseDescriptor,
    default_container_name,
    dump_manifest,
    load_manifest,
    parse_manifest,
)


def test_load_manifest_reads_yaml(tmp_path):
    path = tmp_path / "release.yml"
    path.write_text(
        "image: registry.example.com/team/web:v2\n"
        "name: web\n"
        "ports: ['8080:80', {host: 8443, container: 443}]\n"
        "env: [DATABASE_URL, SECRET_KEY]\n"
        "health: {path: /healthz, interval_ms: 200, timeout_ms: 5000, retries: 2}\n",
        encoding="utf-8",
    )

    d = load_manifest(path)

    assert d == ReleaseDescriptor(
        image="registry.example.com/team/web:v2",
        container_name="web",
        ports=(PortBinding(8080, 80), PortBinding(8443, 443)),
        env_refs=frozenset({"DATABASE_URL", "SECRET_KEY"}),
        health=HealthCheckSpec(path="/healthz", interval_ms=200, timeout_ms=5000, retries=2),
    )


def test_load_manifest_accepts_json(tmp_path):
    path = tmp_path / "release.json"
    path.write_text('{"image": "app:v2", "ports": ["8080:80"]}', encoding="utf-8")

    d = load_manifest(path)

    assert d.container_name == "app"
    assert d.ports == (PortBinding(8080, 80),)
    assert d.health == HealthCheckSpec()


def test_round_trip_yields_identical_descriptor(tmp_path):
    original = parse_manifest(
        {
            "image": "app:v2",
            "ports": ["8080:80", "9090:9090"],
            "env": ["B", "A"],
            "health": {"path": "/health", "interval_ms": 200, "retries": 2, "timeout_ms": 5000},
        }
    )
    path = tmp_path / "dumped.yml"
    path.write_text(dump_manifest(original), encoding="utf-8")

    assert load_manifest(path) == original


def test_ports_keep_declared_order():
    d = parse_manifest({"image": "app:v2", "ports": ["9000:90", "8000:80", "7000:70"]})
    assert [p.host_port for p in d.ports] == [9000, 8000, 7000]


@pytest.mark.parametrize(
    "data,match",
    [
        ({"ports": ["8080:80"]}, "image"),
        ({"image": "app:v2", "ports": ["70000:80"]}, "ports"),
        ({"image": "app:v2", "ports": ["8080:0"]}, "ports"),
        ({"image": "app:v2", "ports": [{"host": 8080}]}, "container"),
        ({"image": "app:v2", "ports": ["8080"]}, "host:container"),
        ({"image": "app:v2", "ports": [484880]}, "quoted"),
        ({"image": "app:v2", "ports": ["8080:80", "8080:81"]}, "more than once"),
        ({"image": "app:v2", "name": "Bad_Name"}, "Invalid container name"),
        ({"image": "app:v2", "env": ["1BAD"]}, "environment variable"),
        ({"image": "app:v2", "health": {"path": "http://evil/"}}, "health path"),
        ({"image": "app:v2", "health": {"interval_ms": 500, "timeout_ms": 100}}, "timeout_ms"),
        ({"image": "app:v2", "health": {"retries": 0}}, "retries"),
        ({"image": "app:v2", "replicas": 3}, "replicas"),
    ],
)
def test_parse_manifest_rejects_invalid_input(data, match):
    with pytest.raises(InvalidManifest, match=match):
        parse_manifest(data)


def test_parse_manifest_rejects_non_mapping():
    with pytest.raises(InvalidManifest, match="mapping"):
        parse_manifest(["image", "app:v2"])


def test_load_manifest_missing_file(tmp_path):
    with pytest.raises(InvalidManifest, match="not found"):
        load_manifest(tmp_path / "nope.yml")


def test_load_manifest_empty_and_broken_files(tmp_path):
    empty = tmp_path / "empty.yml"
    empty.write_text("", encoding="utf-8")
    broken = tmp_path / "broken.yml"
    broken.write_text("image: [unclosed\n", encoding="utf-8")

    with pytest.raises(InvalidManifest, match="empty"):
        load_manifest(empty)
    with pytest.raises(InvalidManifest, match="Invalid manifest file"):
        load_manifest(broken)


@pytest.mark.parametrize(
    "image,expected",
    [
        ("app:v2", "app"),
        ("registry:5000/team/Web_App:v2", "web-app"),
        ("nginx@sha256:abcd", "nginx"),
        ("9lives", "app-9lives"),
    ],
)
def test_default_container_name(image, expected):
    assert default_container_name(image) == expected


def test_descriptor_is_immutable():
    d = parse_manifest({"image": "app:v2"})
    with pytest.raises(AttributeError):
        d.image = "app:v3"


def test_camel_case_keys_are_accepted():
    d = parse_manifest(
        {
            "image": "app:v2",
            "ports": [{"hostPort": 8080, "containerPort": 80}],
            "health": {"path": "/health", "intervalMs": 200, "retries": 2, "timeoutMs": 5000},
        }
    )

    assert d.ports == (PortBinding(8080, 80),)
    assert d.health == HealthCheckSpec(path="/health", interval_ms=200, timeout_ms=5000, retries=2)


@pytest.mark.parametrize(
    "data",
    [
        {"image": "app:v2", "ports": [{"host": True, "container": 80}]},
        {"image": "app:v2", "ports": [{"host": 8080, "container": False}]},
        {"image": "app:v2", "health": {"retries": True}},
    ],
)
def test_booleans_are_not_integers(data):
    with pytest.raises(InvalidManifest):
        parse_manifest(data)


def test_yaml_booleans_in_port_mapping_are_rejected(tmp_path):
    path = tmp_path / "release.yml"
    path.write_text("image: app:v2\nports:\n  - {host: yes, container: 80}\n", encoding="utf-8")

    with pytest.raises(InvalidManifest, match="ports"):
        load_manifest(path)
