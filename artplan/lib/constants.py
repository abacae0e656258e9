"""Shared constants for the planning engine."""

import re

# Identifier validation (PI ids, team ids, work item ids)
ID_PATTERN = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_.\-]*$')
MAX_ID_LEN = 64

# Story sizing
MAX_STORY_POINTS = 5
MIN_SUB_ITEMS = 2
MAX_SUB_ITEMS = 4

# Baseline iteration length used to scale team velocity
BASELINE_ITERATION_DAYS = 14

# Work item types
WORK_ITEM_TYPES = ("story", "feature", "epic", "enabler")

# Plan lifecycle states
STATE_DRAFT = "draft"
STATE_ALLOCATED = "allocated"
STATE_VALIDATED = "validated"
STATE_OPTIMIZED = "optimized"
STATE_COMMITTED = "committed"

# CLI exit codes
EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CONFIG_ERROR = 2
EXIT_VALIDATION_ERROR = 3
EXIT_PLANNING_ERROR = 4
EXIT_EXTERNAL_ERROR = 5
EXIT_CANCELLED = 130
