"""Constants for the Cloudflare Operator."""

import os

# API Group
API_GROUP = "networking.cloudflare-operator.io"
API_VERSION = "v1alpha2"
API_GROUP_VERSION = f"{API_GROUP}/{API_VERSION}"

# Resource Kinds
KIND_TUNNEL = "Tunnel"
KIND_CLUSTER_TUNNEL = "ClusterTunnel"
KIND_TUNNEL_BINDING = "TunnelBinding"
KIND_CONFIG_MAP = "ConfigMap"
KIND_SECRET = "Secret"
KIND_DEPLOYMENT = "Deployment"
KIND_SERVICE = "Service"

# Kinds allowed to contribute tunnel-wide settings to an aggregated configuration
SETTINGS_OWNER_KINDS = frozenset({KIND_TUNNEL, KIND_CLUSTER_TUNNEL})

# Namespace holding operator-owned objects for cluster-scoped resources
OPERATOR_NAMESPACE = os.getenv("OPERATOR_NAMESPACE", "cloudflare-operator-system")

# Labels
LABEL_MANAGED_BY = f"{API_GROUP}/managed-by"
LABEL_TUNNEL_ID = f"{API_GROUP}/tunnel-id"
LABEL_LIFECYCLE_OPERATION = f"{API_GROUP}/lifecycle-operation"
LABEL_APP = "app.kubernetes.io/name"
MANAGED_BY_VALUE = "cloudflare-operator"

# Annotations
ANNOTATION_SPEC_HASH = f"{API_GROUP}/spec-hash"

# Finalizers
FINALIZER = f"{API_GROUP}/finalizer"
SECRET_FINALIZER = f"{API_GROUP}/secret-finalizer"

# Field Manager
FIELD_MANAGER = "cloudflare-operator"

# Resource states
STATE_PENDING = "Pending"
STATE_CREATING = "Creating"
STATE_ACTIVE = "Active"
STATE_WARNING = "Warning"
STATE_ERROR = "Error"
STATE_DELETING = "Deleting"

# Ordering used to keep status progress monotonic within a reconcile
STATE_PROGRESS = {
    STATE_PENDING: 0,
    STATE_CREATING: 1,
    STATE_ACTIVE: 2,
}

# Sync statuses of an aggregated configuration
SYNC_PENDING = "Pending"
SYNC_SYNCING = "Syncing"
SYNC_SYNCED = "Synced"
SYNC_ERROR = "Error"

# Condition Types
COND_READY = "Ready"
COND_SYNCED = "Synced"

# Condition Reasons
REASON_RECONCILING = "Reconciling"
REASON_RECONCILED = "Reconciled"
REASON_FAILED = "Failed"
REASON_NOT_FOUND = "NotFound"
REASON_INVALID_CONFIG = "InvalidConfig"
REASON_API_ERROR = "APIError"
REASON_TRANSIENT = "TransientError"
REASON_CONFLICT_RETRIES_EXHAUSTED = "ConflictRetriesExhausted"
REASON_SECRET_MATERIAL_LOST = "SecretMaterialLost"
REASON_OWNERSHIP_CONFLICT = "OwnershipConflict"
REASON_DELETING = "Deleting"
REASON_SYNC_FAILED = "SyncFailed"

# Event Reasons
EVENT_REASON_RECONCILE_STARTED = "ReconcileStarted"
EVENT_REASON_RECONCILE_FAILED = "ReconcileFailed"
EVENT_REASON_VALIDATE_FAILED = "ValidateFailed"
EVENT_REASON_TUNNEL_CREATED = "TunnelCreated"
EVENT_REASON_TUNNEL_ADOPTED = "TunnelAdopted"
EVENT_REASON_TUNNEL_DELETED = "TunnelDeleted"
EVENT_REASON_CONFIG_SYNCED = "ConfigurationSynced"
EVENT_REASON_OWNERSHIP_CONFLICT = "OwnershipConflict"
EVENT_REASON_SECRET_MATERIAL_LOST = "SecretMaterialLost"
EVENT_REASON_DELETION_PENDING = "DeletionPending"

# Lifecycle request operations and outcomes
OPERATION_CREATE = "create"
OPERATION_DELETE = "delete"
OUTCOME_PENDING = "Pending"
OUTCOME_SUCCEEDED = "Succeeded"
OUTCOME_FAILED = "Failed"

# Default tunnel routing settings
DEFAULT_FALLBACK_TARGET = "http_status:404"
DEFAULT_RULE_PRIORITY = 100
