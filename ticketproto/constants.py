TICKETS_ROOT = ".tickets"
TICKETS_DIR = ".tickets/tickets"
CONFIG_PATH = ".tickets/config.yml"
TEMPLATE_PATH = ".tickets/template.md"
INDEX_PATH = ".tickets/index.json"

POLICY_TIER_ENV = "TICKET_POLICY_TIER"

INDEX_FORMAT_VERSION = 1
WORKFLOW_NAME = "simple-v1"

STATE_ORDER = ("backlog", "ready", "in_progress", "blocked", "done")
PRIORITY_ORDER = ("p0", "p1", "p2", "p3")
QA_STATUS_ORDER = ("pending_impl", "ready_for_qa", "qa_failed", "qa_passed")

STATE_RANK = {state: rank for rank, state in enumerate(STATE_ORDER)}
PRIORITY_RANK = {priority: rank for rank, priority in enumerate(PRIORITY_ORDER)}

REQUIRED_KEYS = ("id", "title", "state", "priority", "labels")

FRONTMATTER_KEY_ORDER = (
    "id",
    "title",
    "state",
    "priority",
    "labels",
    "created",
    "updated",
    "assignee",
    "reviewer",
    "x_ticket",
)
