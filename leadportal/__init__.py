import os
import logging

import click
from flask import Flask, jsonify

from leadportal.config import config_by_name
from leadportal.errors import LeadWorkflowError
from leadportal.extensions import db, migrate, limiter


def create_app(config_name=None):
    """Application factory."""

    if config_name is None:
        config_name = os.environ.get("FLASK_ENV", "development")

    app = Flask(__name__)
    app.config.from_object(config_by_name[config_name])

    # --- Validate required env vars (skip in testing) ---
    if config_name != "testing":
        try:
            config_by_name[config_name].validate()
        except RuntimeError as e:
            app.logger.warning(f"Config validation: {e}")

    # --- Init extensions ---
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from leadportal import models  # noqa: F401

    # --- Register blueprints ---
    from leadportal.blueprints.leads import leads_bp
    from leadportal.blueprints.quote import quote_bp
    from leadportal.blueprints.capture import capture_bp

    app.register_blueprint(leads_bp)
    app.register_blueprint(quote_bp)
    app.register_blueprint(capture_bp)

    # --- Health check ---
    @app.route("/health")
    def health():
        return jsonify(ok=True)

    # --- Error handlers ---
    @app.errorhandler(LeadWorkflowError)
    def workflow_error(e):
        db.session.rollback()
        return jsonify(ok=False, error=e.message), e.status_code

    @app.errorhandler(404)
    def not_found(e):
        return jsonify(ok=False, error="Not found."), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify(ok=False, error="Method not allowed."), 405

    @app.errorhandler(429)
    def rate_limited(e):
        return jsonify(ok=False, error="Too many requests. Please try again later."), 429

    @app.errorhandler(500)
    def server_error(e):
        db.session.rollback()
        return jsonify(ok=False, error="Internal server error."), 500

    # --- CLI commands ---
    register_cli(app)

    # --- Security headers ---
    @app.after_request
    def add_security_headers(response):
        """Add security headers to every response."""
        # Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        # Prevent clickjacking
        response.headers["X-Frame-Options"] = "DENY"
        # Control referrer information
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # JSON only
        response.headers["Content-Security-Policy"] = (
            "default-src 'none'; frame-ancestors 'none';"
        )
        # Strict Transport Security (only in production)
        if not app.debug:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # --- Logging ---
    if not app.debug:
        logging.basicConfig(level=logging.INFO)

    return app


def register_cli(app):
    """Register custom CLI commands with the Flask app."""

    @app.cli.command("lead-status")
    @click.argument("lead_id")
    def lead_status(lead_id):
        """Print the derived workflow status of both tracks of a lead.

        Usage:
            flask lead-status 3f1c...
        """
        from datetime import datetime, timezone

        from leadportal.models.lead import Lead
        from leadportal.workflow.engine import describe
        from leadportal.workflow.sla import compute_sla
        from leadportal.workflow.tracks import TRACKS, effective_track

        lead = db.session.get(Lead, lead_id)
        if lead is None:
            click.echo(f"Lead {lead_id} not found.")
            return

        click.echo(f"{lead.full_name} ({lead.reference_code}) - {lead.setup_type}")
        activities = lead.activities.all()
        now = datetime.now(timezone.utc)
        for track in TRACKS:
            status = describe(lead, track, compute_sla(lead, activities, now, track))
            marker = "*" if track == effective_track(lead) else " "
            click.echo(f" {marker} {track:<8} {status.status}")
            click.echo(f"            next: {status.next_action}")
            if status.overdue:
                click.echo("            overdue")
            if status.reminder_count:
                click.echo(f"            reminders sent: {status.reminder_count}")
            if status.invoice_outdated:
                click.echo("            invoice is outdated")

    @app.cli.command("decode-notes")
    @click.option("--dry-run", is_flag=True, help="Show what would change without saving.")
    def decode_notes_command(dry_run):
        """Split legacy combined notes blobs into the structured notes fields.

        Older imports stored customer notes, admin notes, bank details and
        the lead reference in customer_notes. This moves each section to
        its own field.

        Usage:
            flask decode-notes
            flask decode-notes --dry-run
        """
        from leadportal.models.lead import Lead
        from leadportal.workflow.notes import decode_notes

        updated = 0
        for lead in Lead.query.filter(Lead.customer_notes.isnot(None)).all():
            decoded = decode_notes(lead.customer_notes)
            if decoded.customer == lead.customer_notes:
                continue

            updated += 1
            click.echo(f"  {lead.id}: splitting notes")
            if dry_run:
                continue

            lead.customer_notes = decoded.customer
            if decoded.admin:
                lead.admin_notes = (
                    f"{lead.admin_notes}\n\n{decoded.admin}" if lead.admin_notes else decoded.admin
                )
            if decoded.bank_details and not lead.bank_details:
                lead.bank_details = decoded.bank_details
            if decoded.reference and not lead.reference_code:
                lead.reference_code = decoded.reference

        if not dry_run:
            db.session.commit()
        click.echo(f"{'Would update' if dry_run else 'Updated'} {updated} lead(s).")
