# backend/presstrack/__init__.py
import logging

from flask import Flask

from .config import Config
from .extensions import db, migrate


def create_app(test_config=None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if test_config:
        app.config.update(test_config)

    app.logger.setLevel(getattr(logging, str(app.config["LOG_LEVEL"]).upper(), logging.INFO))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Services are built once per app from config; routes and the CLI read them off app.extensions
    from .services.inventory_service import InventoryService
    from .services.permission_service import RoleCapabilities, StaticDepartmentDirectory
    from .services.reservation_service import ReservationService
    from .services.workflow_service import WorkflowService

    capabilities = RoleCapabilities.from_mapping(app.config["ROLE_CAPABILITIES"])
    directory = app.config.get("DEPARTMENT_DIRECTORY") or StaticDepartmentDirectory(app.config["DEPARTMENT_MEMBERS"])

    app.extensions["presstrack.workflow"] = WorkflowService(
        capabilities=capabilities,
        directory=directory,
        default_sequence=app.config["DEFAULT_PRODUCTION_SEQUENCE"],
        require_materials_for_production=app.config["REQUIRE_MATERIALS_FOR_PRODUCTION"],
    )
    app.extensions["presstrack.inventory"] = InventoryService(capabilities)
    app.extensions["presstrack.reservations"] = ReservationService(capabilities)

    # Register blueprints
    from .routes.system import system_bp
    from .routes.items import items_bp
    from .routes.inventory import inventory_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(items_bp)
    app.register_blueprint(inventory_bp)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
