import pytest
from fastapi.testclient import TestClient

from dpr import db
from dpr.api import create_app
from dpr.errors import DriverError

TARGET = {
    "cluster": {"name": "c1"},
    "node_pools": [
        {
            "machine_pool": {"name": "mp", "replicas": 2, "version": "v1.29.2"},
            "docker_machine_pool": {"name": "dmp"},
        }
    ],
}


@pytest.fixture()
def client(driver, tmp_db):
    # Passes are driven explicitly through app.state.reconciler.tick().
    with TestClient(create_app(driver, start_reconciler=False)) as c:
        yield c


def test_healthz(client):
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.json() == {"status": "healthy"}


def test_register_and_get_cluster(client):
    r = client.post("/clusters", json=TARGET)
    assert r.status_code == 201
    body = r.json()
    assert body["cluster"] == "c1"
    assert body["node_pools"] == ["dmp"]
    assert body["converged"] is None

    assert [c["cluster"] for c in client.get("/clusters").json()] == ["c1"]
    assert client.get("/clusters/c1").status_code == 200
    assert client.get("/clusters/nope").status_code == 404


@pytest.mark.parametrize(
    "cluster",
    [
        {"name": ""},
        {"name": "c1", "pod_cidrs": ["10.244.0.0/16"], "service_cidrs": ["fd00:10:96::/112"]},
    ],
)
def test_register_rejects_invalid_cluster(client, cluster):
    r = client.post("/clusters", json={**TARGET, "cluster": cluster})
    assert r.status_code == 422


def test_register_rejects_negative_replicas(client):
    payload = {
        "cluster": {"name": "c1"},
        "node_pools": [
            {
                "machine_pool": {"name": "mp", "replicas": -1, "version": "v1.29.2"},
                "docker_machine_pool": {"name": "dmp"},
            }
        ],
    }
    assert client.post("/clusters", json=payload).status_code == 422


def test_status_reflects_last_pass(client, driver):
    client.post("/clusters", json=TARGET)

    assert client.app.state.reconciler.tick() is True

    body = client.get("/clusters/c1").json()
    assert body["converged"] is True
    assert body["out_of_spec"] == {"dmp": 0}
    assert body["load_balancer_ip"].startswith("172.18.0.")
    assert body["last_error"] is None
    assert len(driver.names()) == 2


def test_prioritize_delete_and_list_machines(client):
    r = client.put("/clusters/c1/pools/dmp/machines/worker-abc123", json={"prioritize_delete": True})
    assert r.status_code == 200
    assert r.json() == {"name": "worker-abc123", "prioritize_delete": True}

    machines = client.get("/clusters/c1/pools/dmp/machines").json()
    assert machines == [{"name": "worker-abc123", "prioritize_delete": True}]

    r = client.put("/clusters/c1/pools/dmp/machines/worker-abc123", json={"prioritize_delete": False})
    assert r.json()["prioritize_delete"] is False


def test_prioritize_delete_rejects_bad_name(client):
    r = client.put("/clusters/c1/pools/dmp/machines/-bad", json={})
    assert r.status_code == 422


def test_delete_cluster_removes_containers(client, driver):
    client.post("/clusters", json=TARGET)
    client.app.state.reconciler.tick()
    assert driver.names() != []

    r = client.delete("/clusters/c1")
    assert r.status_code == 204

    assert driver.containers == {}
    assert client.get("/clusters/c1").status_code == 404
    assert db.load_statuses("c1", "dmp") == []
    assert client.delete("/clusters/c1").status_code == 404


def test_events_are_journaled(client):
    client.post("/clusters", json=TARGET)

    events = client.get("/events", params={"limit": 5}).json()
    assert events[0]["message"] == "Cluster registered"
    assert events[0]["cluster"] == "c1"


def test_failed_delete_keeps_cluster_registered(client, driver):
    client.post("/clusters", json=TARGET)
    client.app.state.reconciler.tick()
    before = sorted(driver.containers)
    driver.fail_on[("delete", "*")] = DriverError("device busy")

    r = client.delete("/clusters/c1")
    assert r.status_code == 502
    assert "device busy" in r.json()["detail"]

    assert client.get("/clusters/c1").status_code == 200
    assert sorted(driver.containers) == before

    driver.fail_on.clear()
    assert client.delete("/clusters/c1").status_code == 204
    assert driver.containers == {}
    assert client.get("/clusters/c1").status_code == 404
