# backend/presstrack/config.py
from __future__ import annotations
import json
import os


DEFAULT_PRODUCTION_SEQUENCE = [
    "foiling",
    "printing",
    "pasting",
    "cutting",
    "letterpress",
    "embossing",
    "packing",
]

ALL_DEPARTMENTS = ["sales", "design", "prepress", "production", "outsource"]

# role -> departments it may act on, plus extra actions it may perform
DEFAULT_ROLE_CAPABILITIES = {
    "super_admin": {
        "departments": ALL_DEPARTMENTS,
        "actions": ["force_production", "redefine_sequence", "manage_inventory", "allocate_material"],
    },
    "admin": {
        "departments": ALL_DEPARTMENTS,
        "actions": ["force_production", "redefine_sequence", "manage_inventory", "allocate_material"],
    },
    "sales": {"departments": ["sales"], "actions": ["allocate_material"]},
    "design": {"departments": ["design"], "actions": []},
    "prepress": {"departments": ["prepress"], "actions": ["force_production", "allocate_material"]},
    "production": {
        "departments": ["production", "outsource"],
        "actions": ["allocate_material", "manage_inventory"],
    },
}


def _json_env(name: str, default):
    raw = os.environ.get(name)
    if not raw:
        return default
    return json.loads(raw)


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///presstrack.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    DEFAULT_PRODUCTION_SEQUENCE = DEFAULT_PRODUCTION_SEQUENCE
    ROLE_CAPABILITIES = _json_env("ROLE_CAPABILITIES", DEFAULT_ROLE_CAPABILITIES)

    # user_id -> department; the auth/profile system owns this, we only read it
    DEPARTMENT_MEMBERS = _json_env("DEPARTMENT_MEMBERS", {})

    REQUIRE_MATERIALS_FOR_PRODUCTION = os.environ.get(
        "REQUIRE_MATERIALS_FOR_PRODUCTION", "false"
    ).lower() == "true"

    # Optional DepartmentDirectory instance; replaces the static one built from DEPARTMENT_MEMBERS
    DEPARTMENT_DIRECTORY = None
