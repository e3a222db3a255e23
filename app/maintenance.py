# ==============================================================================
# app/maintenance.py
# ------------------------------------------------------------------------------
# Flask CLI commands for seeding, data-integrity checks and bulk
# recalculation.
# ==============================================================================

from datetime import datetime

import click

from app import db


def _confirm(message, assume_yes):
    if assume_yes:
        return True
    return click.confirm(message, default=False)


def register_commands(app):
    """Attaches the maintenance commands to `app.cli`."""

    @app.cli.command("seed")
    def seed():
        """Seeds the database with default settings and the admin user."""
        from app.seed import seed_data
        seed_data()
        app.logger.info("Database has been seeded with default values.")

    @app.cli.command("check-targets")
    @click.option('--company-id', type=int, default=None, help='Only check one company.')
    def check_targets(company_id):
        """Reports orphaned and overlapping duplicate targets."""
        from app.calculator.targets import find_duplicate_targets, find_orphaned_targets

        orphans = find_orphaned_targets(company_id)
        duplicates = find_duplicate_targets(company_id)

        click.echo(f"Orphaned targets: {len(orphans)}")
        for target in orphans:
            click.echo(f"  #{target.id} {target.name} (parent #{target.parent_target_id})")
        click.echo(f"Duplicate target groups: {len(duplicates)}")
        for group in duplicates:
            keep, *others = group
            click.echo(f"  keep #{keep.id} {keep.name}; duplicates: {', '.join(f'#{t.id}' for t in others)}")
        if not orphans and not duplicates:
            click.echo("All targets are consistent.")

    @app.cli.command("fix-orphaned-targets")
    @click.option('--company-id', type=int, default=None)
    @click.option('--yes', 'assume_yes', is_flag=True, help='Do not ask for confirmation.')
    def fix_orphaned_targets(company_id, assume_yes):
        """Deactivates child targets whose parent is missing or inactive."""
        from app.calculator.targets import deactivate_target, find_orphaned_targets

        orphans = find_orphaned_targets(company_id)
        if not orphans:
            click.echo("No orphaned targets found.")
            return
        if not _confirm(f"Deactivate {len(orphans)} orphaned targets?", assume_yes):
            click.echo("Aborted.")
            return

        deactivated = []
        for target in orphans:
            deactivated.extend(deactivate_target(target))
        db.session.commit()
        click.echo(f"Deactivated {len(deactivated)} targets.")

    @app.cli.command("fix-duplicate-targets")
    @click.option('--company-id', type=int, default=None)
    @click.option('--yes', 'assume_yes', is_flag=True, help='Do not ask for confirmation.')
    def fix_duplicate_targets(company_id, assume_yes):
        """Keeps the newest target of each overlapping group and deactivates the rest."""
        from app.calculator.targets import deactivate_target, find_duplicate_targets

        groups = find_duplicate_targets(company_id)
        if not groups:
            click.echo("No duplicate targets found.")
            return
        surplus = [t for group in groups for t in group[1:]]
        if not _confirm(f"Deactivate {len(surplus)} duplicate targets?", assume_yes):
            click.echo("Aborted.")
            return

        deactivated = []
        for target in surplus:
            deactivated.extend(deactivate_target(target))
        db.session.commit()
        click.echo(f"Deactivated {len(deactivated)} targets.")

    @app.cli.command("recalculate-commissions")
    @click.option('--user-id', type=int, default=None, help='Only recalculate this user.')
    @click.option('--yes', 'assume_yes', is_flag=True, help='Do not ask for confirmation.')
    def recalculate_commissions(user_id, assume_yes):
        """Re-runs the engine over every closed and open deal."""
        from app.calculator.engine import batch_recalculate
        from app.models import Deal

        query = Deal.query
        if user_id is not None:
            query = query.filter(Deal.user_id == user_id)
        deals = query.order_by(Deal.close_date).all()
        if not deals:
            click.echo("No deals to recalculate.")
            return
        if not _confirm(f"Recalculate commissions for {len(deals)} deals?", assume_yes):
            click.echo("Aborted.")
            return

        groups = batch_recalculate(deals, trigger='maintenance')
        click.echo(f"Recalculated {len(deals)} deals across {groups} user/period combinations.")

    @app.cli.command("purge-webhook-events")
    def purge_webhook_events():
        """Deletes webhook event ids past their retention date."""
        from app.models import WebhookEvent

        removed = WebhookEvent.query.filter(WebhookEvent.expires_at <= datetime.utcnow()).delete()
        db.session.commit()
        click.echo(f"Removed {removed} expired webhook events.")
