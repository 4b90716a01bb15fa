# Overview: Flask CLI command groups for bootstrap and ledger maintenance.

# backend/presstrack/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create any missing tables. Safe to run repeatedly.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Inventory maintenance:
# - python -m flask inventory verify [--paper-id 3]
#   Replay the ledger of one paper (or all) and compare with the stored counters.
# - python -m flask inventory low-stock
#   List active papers at or below their reorder threshold.

import click
from flask import current_app
from flask.cli import with_appcontext

from .errors import ConsistencyError, NotFound
from .extensions import db
from .models import PaperStockItem


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Database schema ready.")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete.")


@click.group('inventory')
def inventory_group():
    """Paper stock ledger inspection."""


@inventory_group.command('verify')
@click.option('--paper-id', type=int, default=None, help='Verify a single paper')
@with_appcontext
def verify_ledger(paper_id):
    """
    Replay ledgers and compare against the materialized counters.

    Exits non-zero if any paper has drifted.
    """
    inventory = current_app.extensions["presstrack.inventory"]

    if paper_id is not None:
        paper_ids = [paper_id]
    else:
        paper_ids = [pid for (pid,) in db.session.query(PaperStockItem.id).order_by(PaperStockItem.id).all()]

    failures = 0
    for pid in paper_ids:
        try:
            state = inventory.verify_ledger(pid)
        except NotFound as e:
            raise click.ClickException(e.message)
        except ConsistencyError as e:
            failures += 1
            click.echo(f"FAIL paper {pid}: {e.message}")
            continue
        click.echo(f"PASS paper {pid}: total={state.total} reserved={state.reserved}")

    if failures:
        raise click.ClickException(f"{failures} of {len(paper_ids)} papers failed verification")
    click.echo(f"PASS {len(paper_ids)} papers verified.")


@inventory_group.command('low-stock')
@with_appcontext
def low_stock():
    """List active papers at or below their reorder threshold."""
    papers = current_app.extensions["presstrack.inventory"].list_low_stock()
    if not papers:
        click.echo("No papers below their reorder threshold.")
        return

    click.echo(f"\n{'ID':<5} {'Name':<30} {'GSM':<6} {'Available':<10} {'Threshold':<10}")
    click.echo("-" * 65)
    for p in papers:
        click.echo(f"{p.id:<5} {p.name[:30]:<30} {p.gsm:<6} {p.available_sheets:<10} {p.reorder_threshold:<10}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(inventory_group)
