"""
changemaker.constants — Shared Constants
=========================================

Single source of truth for role names, activity types, and the defaults
referenced by services, validators, and route handlers.
"""

from __future__ import annotations

import re

# ---------------------------------------------------------------------------
# Roles & activity types
# ---------------------------------------------------------------------------
ROLES: tuple[str, ...] = ("ADMIN", "MANAGER", "PARTICIPANT")

ACTIVITY_TYPES: tuple[str, ...] = (
    "TEXT_SUBMISSION",
    "FILE_UPLOAD",
    "PHOTO_UPLOAD",
    "LINK_SUBMISSION",
    "MULTIPLE_CHOICE",
    "VIDEO_SUBMISSION",
)

# ---------------------------------------------------------------------------
# Workspace slugs
# ---------------------------------------------------------------------------
SLUG_PATTERN = re.compile(r"^[a-z0-9-]+$")
SLUG_MIN_LENGTH = 2
SLUG_MAX_LENGTH = 50

# ---------------------------------------------------------------------------
# Activities
# ---------------------------------------------------------------------------
DEFAULT_BASE_POINTS = 10
DEFAULT_MAX_SUBMISSIONS = 1

# ---------------------------------------------------------------------------
# Invites
# ---------------------------------------------------------------------------
INVITE_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"  # no 0/O/1/I
INVITE_CODE_LENGTH = 8
INVITE_CODE_MAX_ATTEMPTS = 10
DEFAULT_INVITE_EXPIRY_DAYS = 30
MIN_INVITE_EXPIRY_HOURS = 1

# ---------------------------------------------------------------------------
# Notifications (expiry windows in days)
# ---------------------------------------------------------------------------
NOTIFICATION_DEFAULT_TTL_DAYS = 30
SHIPPING_NOTIFICATION_TTL_DAYS = 60
REWARD_NOTIFICATION_TTL_DAYS = 30
SUBMISSION_NOTIFICATION_TTL_DAYS = 14

# ---------------------------------------------------------------------------
# Presentation defaults
# ---------------------------------------------------------------------------
DEFAULT_BRAND_COLOR = "#F97316"

# Fields a user must fill in before a physical (SKU) reward can ship.
SHIPPING_ADDRESS_FIELDS: tuple[str, ...] = (
    "address_line1",
    "city",
    "state",
    "zip_code",
    "country",
)
