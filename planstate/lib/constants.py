"""Shared constants for the plan state engine."""

import re

# Persisted document schema version (no migrations: a mismatch is fatal)
STATE_VERSION = "2.0.0"

# Entity ID validation
PLAN_ID_PATTERN = re.compile(r'^plan-[a-z0-9]{8}$')
STAGING_ID_PATTERN = re.compile(r'^staging-[a-z0-9]{4}$')
TASK_ID_PATTERN = re.compile(r'^task-[a-z0-9]{8}$')
MEMORY_ID_PATTERN = re.compile(r'^mem-[a-z0-9]{8}$')

# Allow-list for any id that ends up inside a filesystem path
SAFE_ID_PATTERN = re.compile(r'^[A-Za-z0-9_-]+$')

ID_ALPHABET = "abcdefghijklmnopqrstuvwxyz0123456789"

# On-disk layout, relative to the project root
DEFAULT_STATE_DIR = ".claude"
STATE_FILE_NAME = "state.json"
CONFIG_FILE_NAME = "planstate.yaml"
PLANS_DIR_NAME = "plans"
ARCHIVE_DIR_NAME = "archive"
ARTIFACTS_DIR_NAME = "artifacts"
TASK_OUTPUT_SUFFIX = "-output.json"

MAX_HISTORY_ENTRIES = 1000
DEFAULT_MEMORY_PRIORITY = 50
PROJECT_SUMMARY_PRIORITY = 100

DEFAULT_MEMORY_CATEGORIES = [
    "general",
    "planning",
    "coding",
    "review",
    "staging-start",
    "task-start",
    "task-complete",
    "staging-complete",
    "plan-complete",
    "project-summary",
]
