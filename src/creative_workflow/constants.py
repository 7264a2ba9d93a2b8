STATE_DIR_NAME = ".creative_workflow"
CONFIG_FILE = "config.yaml"
TASKS_FILE = "tasks.yaml"
TASKS_LOCK_FILE = "tasks.lock"
EVENTS_FILE = "events.jsonl"
EVENTS_LOCK_FILE = "events.lock"
SCHEMA_VERSION = 1

LOG_LEVEL_ENV_VAR = "CREATIVE_WORKFLOW_LOG_LEVEL"

FIRST_STEP = 1
FINAL_STEP = 7
TOTAL_STEPS = 7

STEP_LABELS = {
    1: "Brief & Context",
    2: "Select Tool",
    3: "Create Prompt",
    4: "Generate Output",
    5: "Upload Output",
    6: "Review & Iterate",
    7: "Submit for Clearance",
}

# Stages that may never be skipped
CRITICAL_STEPS = frozenset({1, 2, 7})

# Stages where the selected tool is launched
TOOL_LAUNCH_STEPS = frozenset({3, 4})

GUARD_MESSAGE_SELECT_TOOL = "Select an AI tool to continue."
GUARD_MESSAGE_UPLOAD_ASSET = "Upload at least one output asset."

SKIP_CAVEAT = "Provenance for stage {step} ({label}) is incomplete and will be flagged in the audit view."

QUALITY_CHECKS = {
    "meets_brief": "Meets creative brief",
    "matches_brand": "Matches brand guidelines",
    "appropriate_audience": "Appropriate for target audience",
    "ready_for_review": "Ready for legal review",
}

TRACKING_LABEL_FULL = "Full Tracking"
TRACKING_LABELS_PARTIAL = frozenset({"Good Tracking", "Basic Tracking"})

DEFAULT_POLL_INTERVAL_SECONDS = 10.0
DEFAULT_ACTIVITY_CHANCE = 0.3
DEFAULT_MAX_INCREMENT = 2
DEFAULT_AUTO_POLL = False
