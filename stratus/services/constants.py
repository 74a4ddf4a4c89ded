DEPLOYMENT_STATUS_PENDING = "pending"
DEPLOYMENT_STATUS_AWAITING_APPROVAL = "awaiting_approval"
DEPLOYMENT_STATUS_IN_PROGRESS = "in_progress"
DEPLOYMENT_STATUS_READY = "ready"
DEPLOYMENT_STATUS_ERROR = "error"
DEPLOYMENT_STATUS_DESTROYED = "destroyed"

DEPLOYMENT_TERMINAL_STATUSES = (
    DEPLOYMENT_STATUS_READY,
    DEPLOYMENT_STATUS_ERROR,
    DEPLOYMENT_STATUS_DESTROYED,
)

STACK_OP_STATUS_PENDING = "pending"
STACK_OP_STATUS_IN_PROGRESS = "in_progress"
STACK_OP_STATUS_COMPLETE = "complete"
STACK_OP_STATUS_UNCHANGED = "unchanged"
STACK_OP_STATUS_FAILED = "failed"
STACK_OP_STATUS_SKIPPED = "skipped"

OPERATION_CREATE = "create"
OPERATION_UPDATE = "update"
OPERATION_DELETE = "delete"
OPERATION_NOOP = "noop"

SEVERITY_ERROR = "error"
SEVERITY_WARNING = "warning"

DEFAULT_TEMPLATE_ROOT = "infrastructure"
DEFAULT_ENVIRONMENTS = ("development", "staging", "production")
APPROVAL_REQUIRED_BY_DEFAULT = ("production",)
DEFAULT_ROOT_TEMPLATE = "root.yaml"
DEFAULT_CAPABILITIES = ("CAPABILITY_IAM", "CAPABILITY_NAMED_IAM", "CAPABILITY_AUTO_EXPAND")

# CloudFormation rejects inline template bodies above this size
MAX_INLINE_TEMPLATE_BYTES = 51_200
MAX_TEMPLATE_BYTES = 1_000_000
MAX_PARAMETERS = 200
MAX_RESOURCES = 500
MAX_OUTPUTS = 200
