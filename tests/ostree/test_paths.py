import json

import pytest

from lca.ostree.models import Status
from lca.ostree.paths import (
    get_deployment_from_deployment_id,
    get_deployment_origin_path,
    get_stateroot_name,
    get_stateroot_path,
    path_outside_chroot,
)


def test_deployment_from_id_returns_text_after_last_dash():
    assert get_deployment_from_deployment_id("rhcos-abc123.1") == "abc123.1"
    assert get_deployment_from_deployment_id("rhcos_4-16-def.0") == "def.0"


@pytest.mark.parametrize("bad", ["", "abc123.1", "rhcos_4_16"])
def test_deployment_from_id_without_dash_fails(bad):
    with pytest.raises(ValueError):
        get_deployment_from_deployment_id(bad)


def test_stateroot_helpers():
    assert get_stateroot_name("4.16.0-rc.1") == "rhcos_4.16.0_rc.1"
    assert get_stateroot_path("rhcos_4_16") == "/ostree/deploy/rhcos_4_16"
    assert get_stateroot_path("") == "/ostree/deploy/"
    assert get_deployment_origin_path("r", "abc.0") == "/ostree/deploy/r/deploy/abc.0.origin"
    assert path_outside_chroot("/var/ibu", "/host") == "/host/var/ibu"


def test_status_from_rpm_ostree_json():
    raw = json.loads("""
    {"deployments": [
        {"osname": "rhcos_4_16", "id": "rhcos_4_16-aaa.0", "booted": false},
        {"osname": "rhcos", "id": "rhcos-bbb.1", "booted": true}
    ]}
    """)
    status = Status.from_json(raw)
    assert [d.os_name for d in status.deployments] == ["rhcos_4_16", "rhcos"]
    assert status.booted().id == "rhcos-bbb.1"
