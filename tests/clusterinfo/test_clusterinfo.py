import base64
import json
from types import SimpleNamespace as NS

import pytest

from lca.clusterinfo.clusterinfo import export_seed_reconfiguration, get_cluster_info
from lca.clusterinfo.network import fetch_network_config
from lca.errors import LcaError

INSTALL_CONFIG = """
baseDomain: example.com
metadata:
  name: sno
sshKey: ssh-ed25519 AAAA
"""


def _b64(s):
    return base64.b64encode(s.encode()).decode()


class FakeCore:
    def __init__(self, masters=1):
        self.masters = masters

    def read_namespaced_config_map(self, name, namespace):
        if name == "cluster-config-v1":
            return NS(data={"install-config": INSTALL_CONFIG})
        if name == "admin-kubeconfig-client-ca":
            return NS(data={"ca-bundle.crt": "ADMIN-CA"})
        raise AssertionError(name)

    def read_namespaced_secret(self, name, namespace):
        if name == "pull-secret":
            return NS(data={".dockerconfigjson": _b64('{"auths":{}}')})
        return NS(data={"tls.key": _b64(f"{name}-key")})

    def list_node(self, label_selector=None):
        node = NS(
            metadata=NS(name="node-0"),
            status=NS(addresses=[NS(type="Hostname", address="node-0"), NS(type="InternalIP", address="192.0.2.10")]),
        )
        return NS(items=[node] * self.masters)


class FakeCustom:
    def get_cluster_custom_object(self, group, version, plural, name):
        return {
            "spec": {"clusterID": "1234"},
            "status": {"desired": {"version": "4.16.0", "image": "quay.io/openshift-release-dev/ocp-release@sha256:abc"}},
        }


def test_cluster_info_is_read_from_install_config_and_clusterversion():
    info = get_cluster_info(FakeCore(), FakeCustom())

    assert info.version == "4.16.0"
    assert info.base_domain == "example.com"
    assert info.cluster_name == "sno"
    assert info.cluster_id == "1234"
    assert info.node_ip == "192.0.2.10"
    assert info.hostname == "node-0"
    assert info.release_registry == "quay.io"
    assert info.to_manifest()["ssh_key"] == "ssh-ed25519 AAAA"


def test_multiple_masters_is_an_error():
    with pytest.raises(LcaError, match="exactly one master"):
        get_cluster_info(FakeCore(masters=2), FakeCustom())


def test_export_writes_seed_reconfiguration(tmp_path):
    path = export_seed_reconfiguration(FakeCore(), FakeCustom(), tmp_path / "manifest.json")

    data = json.loads(path.read_text())
    assert data["cluster_id"] == "1234"
    assert data["pull_secret"] == '{"auths":{}}'
    serving = data["KubeconfigCryptoRetention"]["KubeAPICrypto"]["ServingCrypto"]
    assert serving["localhost_signer_private_key"] == "localhost-serving-signer-key"
    assert data["KubeconfigCryptoRetention"]["IngresssCrypto"]["ingress_ca"] == "router-ca-key"


def test_fetch_network_config_copies_files_and_directories(tmp_path):
    (tmp_path / "etc/NetworkManager/system-connections").mkdir(parents=True)
    (tmp_path / "etc/NetworkManager/system-connections/eth0.nmconnection").write_text("[connection]\n")
    (tmp_path / "etc/hostname").write_text("node-0\n")
    (tmp_path / "var/lib/ovnk").mkdir(parents=True)
    (tmp_path / "var/lib/ovnk/iface_default_hint").write_text("br-ex\n")

    target = fetch_network_config("/ostree/deploy/rhcos_4.16.0/var/opt/openshift", str(tmp_path))

    assert target == tmp_path / "ostree/deploy/rhcos_4.16.0/var/opt/openshift/network-configuration"
    assert (target / "etc/hostname").read_text() == "node-0\n"
    assert (target / "etc/NetworkManager/system-connections/eth0.nmconnection").exists()
    assert (target / "var/lib/ovnk/iface_default_hint").read_text() == "br-ex\n"
