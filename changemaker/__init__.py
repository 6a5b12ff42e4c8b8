"""
Changemaker — Multi-Tenant Engagement Challenges API
=====================================================
Workspaces run time-boxed challenges, participants enroll and submit
activities, reviewers approve them, and approved work turns into points
or catalog rewards fulfilled through RewardSTACK.

Package layout::

    changemaker/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Roles, activity types, shared defaults
    ├── errors.py          # DatabaseError / ResourceNotFoundError taxonomy
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   └── models.py      # All ORM models
    ├── engine/
    │   ├── permissions.py # Role → permission table, challenge hierarchy
    │   ├── validation.py  # Input validation rules
    │   ├── templates.py   # Email template variables + rendering
    │   └── metrics.py     # Challenge metrics + leaderboard ranking
    ├── rewardstack/
    │   ├── auth.py        # Token issuance + per-environment cache
    │   ├── client.py      # HTTP client + RewardStackError
    │   ├── participants.py  # User → participant sync
    │   ├── reward_logic.py  # Issuance, retry, status polling
    │   ├── webhooks.py    # Signature check + event handlers
    │   └── monitoring.py  # Webhook log health + replay
    ├── ai/
    │   ├── rate_limit.py  # Per-workspace request/token window
    │   ├── cost_tracker.py  # Token cost accounting
    │   ├── email_ai.py    # Prompt building + output parsing
    │   └── composer.py    # Anthropic streaming
    ├── services/          # DB-bound business operations
    └── api/
        ├── main.py        # FastAPI app
        ├── auth.py        # Token → User sync, profile
        └── routes/        # Workspace-scoped REST endpoints
"""

__version__ = "1.0.0"
