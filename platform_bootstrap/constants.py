# /*
# Copyright 2026 The Platform Bootstrap Authors.
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
# */

"""Constants, default paths, and timeouts."""

from __future__ import annotations

from pathlib import Path

# -- Resolved paths --
PACKAGE_DIR = Path(__file__).resolve().parent
DEFAULT_RESOURCE_LIMITS_FILE = PACKAGE_DIR / "resource-limits.yaml"
DEFAULT_OUTPUT_DIR = Path("bootstrap-summaries")
DEFAULT_STATE_DIR = Path.home() / ".local" / "state" / "platform-bootstrap"

# -- Polling --
DEFAULT_POLL_INTERVAL_SECONDS = 5
PROGRESS_LOG_INTERVAL_SECONDS = 30

NODES_READY_TIMEOUT_SECONDS = 300
ARGOCD_READY_TIMEOUT_SECONDS = 300
VAULT_READY_TIMEOUT_SECONDS = 60
VAULT_READY_POLL_INTERVAL_SECONDS = 1
GATEWAY_IP_TIMEOUT_SECONDS = 300
GATEWAY_IP_POLL_INTERVAL_SECONDS = 10
DEVICE_PLUGIN_READY_TIMEOUT_SECONDS = 120

# -- Retries --
DEFAULT_CLUSTER_CREATE_MAX_RETRIES = 3
CLUSTER_CREATE_INITIAL_DELAY_SECONDS = 10
APPLY_MAX_RETRIES = 5
APPLY_INITIAL_DELAY_SECONDS = 2

# -- Process supervision --
PROCESS_GRACE_PERIOD_SECONDS = 10
PROCESS_STARTUP_GRACE_SECONDS = 3
PROCESS_LOG_TAIL_LINES = 20
TUNNEL_PROCESS_NAME = "tunnel"

# -- Cluster providers --
PROVIDER_KIND = "kind"
PROVIDER_MINIKUBE = "minikube"
DEFAULT_CLUSTER_NAME = "opencloudhub-local"
DEFAULT_TOPOLOGY = "basic.yaml"
DEFAULT_MINIKUBE_CPUS = 16
DEFAULT_MINIKUBE_MEMORY = "36g"
DEFAULT_MINIKUBE_DISK = "100g"

# Topology descriptor basename -> cluster type. Unlisted descriptors are single_node.
CLUSTER_TYPE_BY_DESCRIPTOR = {
    "basic.yaml": "single_node",
    "minikube": "single_node",
    "multinode-gpu.yaml": "multi_node",
}

TUNNEL_MATCH_PATTERNS = {
    PROVIDER_KIND: "cloud-provider-kind",
    PROVIDER_MINIKUBE: "minikube tunnel",
}

# -- Persistent storage (inside the minikube VM) --
MINIO_DATA_PATH = "/data/minio"
POSTGRES_DATA_PATH = "/data/postgres"

# -- Node labels --
LABEL_NODE_TYPE = "node.opencloudhub.org/type"
LABEL_GPU_PRESENT = "nvidia.com/gpu.present"
JSONPATH_NODE_TYPE = "{.metadata.labels.node\\.opencloudhub\\.org/type}"
KIND_CLUSTER_LABEL = "io.x-k8s.kind.cluster"

# -- Memory --
DOCKER_CPU_PERIOD = 100_000

# -- Vault --
DEFAULT_VAULT_CONTAINER = "vault-dev"
DEFAULT_VAULT_IMAGE = "hashicorp/vault"
DEFAULT_VAULT_HOST_IP = "127.0.0.1"
DEFAULT_VAULT_PORT = 8200
DEFAULT_VAULT_ROOT_TOKEN = "1234"
DEFAULT_SECRETS_FILE = Path("local-development/.env.secrets")
DEFAULT_SSH_KEY_FILE = Path.home() / ".ssh" / "opencloudhub" / "argocd_gitops_ed25519"
VAULT_KV_MOUNT = "kv"
VAULT_ALREADY_ENABLED_MARKER = "path is already in use"
SSH_PRIVATE_KEY_VARIABLE = "GITOPS_SSH_PRIVATE_KEY"

# -- Namespaces --
NS_ARGOCD = "argocd"
NS_EXTERNAL_SECRETS = "external-secrets"
NS_ISTIO_INGRESS = "istio-ingress"
NS_NVIDIA = "nvidia"

# -- GitOps --
ARGOCD_SERVER_DEPLOYMENT = "argocd-server"
ARGOCD_ADMIN_SECRET = "argocd-initial-admin-secret"
ARGOCD_REPO_SECRET_NAME = "gitops"
ARGOCD_REPO_SECRET_LABEL = "argocd.argoproj.io/secret-type"
VAULT_TOKEN_SECRET = "vault-token"
REL_ARGOCD_BASE = "src/apps/core/argocd/base"
REL_APP_PROJECTS = "src/app-projects"
REL_SECURITY_APPSET = "src/application-sets/security/applicationset.yaml"
REL_ROOT_APP = "src/root-app.yaml"
REL_STORAGE_MANIFESTS = "local-development/manifests"

# -- Helm --
HELM_REPO_NVDP = "nvdp"
HELM_REPO_NVDP_URL = "https://nvidia.github.io/k8s-device-plugin"
HELM_RELEASE_DEVICE_PLUGIN = "nvidia-device-plugin"
HELM_CHART_DEVICE_PLUGIN = "nvdp/nvidia-device-plugin"
DEVICE_PLUGIN_POD_LABEL = "app.kubernetes.io/name=nvidia-device-plugin"

# -- Networking --
GATEWAY_SERVICE = "ingress-gateway-istio"
HOSTS_FILE = Path("/etc/hosts")
HOSTS_BLOCK_MARKER = "opencloudhub-local-dev"
EXPOSED_SERVICES_DOMAIN = "opencloudhub.org"
EXPOSED_SERVICES = (
    "argocd.internal",
    "grafana.internal",
    "mlflow.internal",
    "argo-workflows.internal",
    "minio.internal",
    "minio-api.internal",
    "pgadmin.internal",
    "keycloak.internal",
    "fashion-mnist.dashboard",
    "wine-classifier.dashboard",
    "qwen.dashboard",
    "api",
    "demo-app",
)

# -- Summaries --
SUMMARY_VAULT = "vault-summary"
SUMMARY_BOOTSTRAP = "bootstrap-summary"
SUMMARY_NETWORK = "network-summary"
SUMMARY_RUN = "run-summary"
