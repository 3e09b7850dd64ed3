# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/lca/seedreconfig/models.py
"""
SeedReconfiguration carries everything needed to turn a host booted from a
seed image into the desired single node cluster.

It is a wire contract shared with the image-based install operator: fields
may only be added within a version. A breaking change must bump
SEED_RECONFIGURATION_VERSION, and every consumer checks ``api_version``
before reading anything else.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Union

from pydantic import BaseModel, Field, ValidationError

from lca.errors import SeedReconfigVersionError

SEED_RECONFIGURATION_VERSION = 1

SEED_RECONFIGURATION_FILE_NAME = "manifest.json"


class _Wire(BaseModel):
    model_config = {
        "populate_by_name": True,
        "extra": "ignore",
    }


class ServingCrypto(_Wire):
    localhost_signer_private_key: str = ""
    service_network_signer_private_key: str = ""
    loadbalancer_signer_private_key: str = Field("", alias="loadbalancer_external_signer_private_key")


class ClientAuthCrypto(_Wire):
    admin_ca_certificate: str = ""


class KubeAPICrypto(_Wire):
    serving_crypto: ServingCrypto = Field(default_factory=ServingCrypto, alias="ServingCrypto")
    client_auth_crypto: ClientAuthCrypto = Field(default_factory=ClientAuthCrypto, alias="ClientAuthCrypto")


class IngressCrypto(_Wire):
    ingress_ca: str = ""


class KubeconfigCryptoRetention(_Wire):
    kube_api_crypto: KubeAPICrypto = Field(default_factory=KubeAPICrypto, alias="KubeAPICrypto")
    # the triple 's' is part of the published format
    ingress_crypto: IngressCrypto = Field(default_factory=IngressCrypto, alias="IngresssCrypto")


class SeedReconfiguration(_Wire):
    api_version: int = SEED_RECONFIGURATION_VERSION
    base_domain: str = ""
    cluster_name: str = ""
    # empty during install means "generate a new cluster id"
    cluster_id: str = ""
    node_ip: str = ""
    release_registry: str = ""
    hostname: str = ""
    kubeconfig_crypto_retention: KubeconfigCryptoRetention = Field(
        default_factory=KubeconfigCryptoRetention, alias="KubeconfigCryptoRetention"
    )
    ssh_key: str = ""
    pull_secret: str = ""


def _omit_empty(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _omit_empty(v) for k, v in value.items() if v != "" and v is not None}
    return value


def check_version(data: Dict[str, Any]) -> int:
    version = data.get("api_version")
    if isinstance(version, bool) or not isinstance(version, int):
        raise SeedReconfigVersionError(f"seed reconfiguration has no valid api_version: {version!r}")
    if version < 1 or version > SEED_RECONFIGURATION_VERSION:
        raise SeedReconfigVersionError(
            f"unsupported seed reconfiguration api_version {version}, "
            f"this agent understands up to {SEED_RECONFIGURATION_VERSION}"
        )
    return version


def parse(payload: Union[str, bytes, Dict[str, Any]]) -> SeedReconfiguration:
    data = json.loads(payload) if isinstance(payload, (str, bytes)) else dict(payload)
    if not isinstance(data, dict):
        raise SeedReconfigVersionError("seed reconfiguration must be a JSON object")
    check_version(data)
    try:
        return SeedReconfiguration.model_validate(data)
    except ValidationError as exc:
        raise SeedReconfigVersionError(f"invalid seed reconfiguration: {exc}") from exc


def load(path: str | Path) -> SeedReconfiguration:
    return parse(Path(path).read_text())


def dumps(cfg: SeedReconfiguration) -> str:
    data = _omit_empty(cfg.model_dump(by_alias=True))
    data["api_version"] = cfg.api_version
    return json.dumps(data, indent=2)


def write(cfg: SeedReconfiguration, path: str | Path) -> Path:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(dumps(cfg))
    p.chmod(0o600)
    return p
