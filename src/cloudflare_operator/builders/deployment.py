"""Builder for the cloudflared connector deployment."""

from __future__ import annotations

import os
from typing import Any

from ..constants import KIND_DEPLOYMENT, LABEL_APP, LABEL_MANAGED_BY, LABEL_TUNNEL_ID, MANAGED_BY_VALUE
from ..models import owner_reference, resource_namespace

CLOUDFLARED_IMAGE = os.getenv("CLOUDFLARED_IMAGE", "cloudflare/cloudflared:latest")
CREDENTIALS_MOUNT_PATH = "/etc/cloudflared/creds"
CREDENTIALS_KEY = "credentials.json"
METRICS_PORT = 2000


def deployment_name(obj: dict[str, Any]) -> str:
    return f"{obj['metadata']['name']}-cloudflared"


def credentials_secret_name(obj: dict[str, Any]) -> str:
    return f"{obj['metadata']['name']}-tunnel-credentials"


def create_deployment_from_spec(obj: dict[str, Any], tunnel_id: str) -> dict[str, Any]:
    """Create the connector Deployment for a tunnel resource.

    Args:
        obj: Tunnel or ClusterTunnel object
        tunnel_id: Cloudflare tunnel ID to run

    Returns:
        Deployment object in API server JSON form
    """
    spec = obj.get("spec", {})
    deployment = spec.get("deployment", {})
    name = deployment_name(obj)
    protocol = spec.get("protocol", "auto")
    labels = {
        LABEL_APP: "cloudflared",
        LABEL_MANAGED_BY: MANAGED_BY_VALUE,
        LABEL_TUNNEL_ID: tunnel_id,
        "app": name,
    }

    container = {
        "name": "cloudflared",
        "image": deployment.get("image", CLOUDFLARED_IMAGE),
        "args": [
            "tunnel",
            "--no-autoupdate",
            "--protocol",
            protocol,
            "--metrics",
            f"0.0.0.0:{METRICS_PORT}",
            "run",
            "--credentials-file",
            f"{CREDENTIALS_MOUNT_PATH}/{CREDENTIALS_KEY}",
            tunnel_id,
        ],
        "ports": [{"name": "metrics", "containerPort": METRICS_PORT}],
        "livenessProbe": {
            "httpGet": {"path": "/ready", "port": METRICS_PORT},
            "failureThreshold": 1,
            "initialDelaySeconds": 10,
            "periodSeconds": 10,
        },
        "volumeMounts": [{"name": "creds", "mountPath": CREDENTIALS_MOUNT_PATH, "readOnly": True}],
        "securityContext": {
            "allowPrivilegeEscalation": False,
            "readOnlyRootFilesystem": True,
            "runAsNonRoot": True,
            "capabilities": {"drop": ["ALL"]},
        },
    }
    if deployment.get("resources"):
        container["resources"] = deployment["resources"]

    return {
        "apiVersion": "apps/v1",
        "kind": KIND_DEPLOYMENT,
        "metadata": {
            "name": name,
            "namespace": resource_namespace(obj),
            "labels": labels,
            "ownerReferences": [owner_reference(obj)],
        },
        "spec": {
            "replicas": int(deployment.get("replicas", 1)),
            "selector": {"matchLabels": {"app": name}},
            "template": {
                "metadata": {"labels": labels},
                "spec": {
                    "containers": [container],
                    "volumes": [
                        {
                            "name": "creds",
                            "secret": {"secretName": credentials_secret_name(obj)},
                        }
                    ],
                },
            },
        },
    }
