"""
=============================================================================
SLABMETER - MAIN FLASK APPLICATION
=============================================================================
REST API over the billing engine:
- Billing cycles: start, close (opens the next one), list, delete, export
- Readings: add, delete, CSV upload
- Slab rate configs and the consumption target
- Dashboard summary and analytics

Storage is DynamoDB when USE_DYNAMODB=true, otherwise a local JSON file
(see slabmeter/config.py).

How to run:
    flask --app application run

Errors raised by the engine become JSON responses:
    ValidationError -> 400, NotFoundError -> 404, ConflictError -> 409
=============================================================================
"""

import logging
import math

from flask import Blueprint, Flask, Response, current_app, jsonify, request

from slabmeter.lib.billing_core.errors import (
    BillingError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from slabmeter.lib.billing_core.io import parse_csv_string, report_to_csv
from slabmeter.lib.billing_core.models import SlabRateConfig
from slabmeter.lib.billing_service import BillingService

logger = logging.getLogger(__name__)

api = Blueprint("api", __name__)

STATUS_CODES = {
    ValidationError: 400,
    NotFoundError: 404,
    ConflictError: 409,
}


def create_app(service: BillingService = None) -> Flask:
    """
    Build the Flask app around a BillingService.

    Without an explicit service, the store is chosen from the environment.
    """
    if service is None:
        from slabmeter import config
        config.configure_logging()
        service = BillingService(config.create_store(), default_target=config.DEFAULT_CONSUMPTION_TARGET)

    app = Flask(__name__)
    app.extensions["billing_service"] = service
    app.register_blueprint(api)
    app.register_error_handler(BillingError, handle_billing_error)
    return app


def handle_billing_error(error: BillingError):
    status = STATUS_CODES.get(type(error), 400)
    logger.info("%s: %s", type(error).__name__, error.message)
    return jsonify({"error": error.message}), status


def _service() -> BillingService:
    return current_app.extensions["billing_service"]


def _body() -> dict:
    return request.get_json(silent=True) or {}


def _as_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y"}


# =============================================================================
# HEALTH
# =============================================================================

@api.route("/health", methods=["GET"])
def health():
    return jsonify({"status": "ok", "storage": _service().store.backend_name})


# =============================================================================
# BILLING CYCLES
# =============================================================================

@api.route("/billing-cycles", methods=["GET"])
def list_billing_cycles():
    """All cycles, newest first, with units, cost and per-meter details."""
    return jsonify([r.to_dict() for r in _service().cycle_history()])


@api.route("/billing-cycles/start", methods=["POST"])
def start_billing_cycle():
    body = _body()
    cycle = _service().cycles.start_cycle(body.get("start_date"), body.get("notes", ""))
    return jsonify(cycle.to_dict()), 201


@api.route("/billing-cycles/close-current", methods=["POST"])
def close_current_billing_cycle():
    """
    Close the active cycle on the government collection date and start the
    next cycle from that same date.

    Body: {"government_collection_date": "...", "notes_for_closed_cycle": "...",
           "notes_for_new_cycle": "..."}
    """
    body = _body()
    transition = _service().cycles.close_cycle(
        body.get("government_collection_date"),
        notes_for_closed=body.get("notes_for_closed_cycle"),
        notes_for_new=body.get("notes_for_new_cycle"),
    )
    return jsonify(transition.to_dict()), 200


@api.route("/billing-cycles/active", methods=["GET"])
def get_active_billing_cycle():
    return jsonify(_service().cycles.get_active_cycle().to_dict())


@api.route("/billing-cycles/<cycle_id>", methods=["GET"])
def get_billing_cycle(cycle_id):
    return jsonify(_service().cycles.get_cycle(cycle_id).to_dict())


@api.route("/billing-cycles/<cycle_id>", methods=["PUT"])
def update_billing_cycle(cycle_id):
    # Only notes are editable; dates and status change through start/close.
    cycle = _service().cycles.update_cycle_notes(cycle_id, _body().get("notes", ""))
    return jsonify(cycle.to_dict())


@api.route("/billing-cycles/<cycle_id>", methods=["DELETE"])
def delete_billing_cycle(cycle_id):
    _service().cycles.delete_cycle(cycle_id)
    return jsonify({"message": "Deleted successfully."})


@api.route("/billing-cycles/<cycle_id>/export-data", methods=["GET"])
def export_billing_cycle(cycle_id):
    return jsonify(_service().cycle_export(cycle_id).to_dict())


@api.route("/billing-cycles/<cycle_id>/export.csv", methods=["GET"])
def export_billing_cycle_csv(cycle_id):
    report = _service().cycle_export(cycle_id)
    filename = f"Bill_Report_{report.cycle.start_date.date().isoformat()}.csv"
    return Response(
        report_to_csv(report),
        mimetype="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


# =============================================================================
# READINGS
# =============================================================================

@api.route("/readings", methods=["GET"])
def list_readings():
    readings = _service().ledger.list_readings(
        meter_id=request.args.get("meter_id"),
        cycle_id=request.args.get("cycle_id"),
    )
    return jsonify([r.to_dict() for r in readings])


@api.route("/readings", methods=["POST"])
def add_reading():
    """
    Body: {"meter_id": "...", "timestamp": "2025-11-01T08:00:00Z",
           "value": 1234.5, "notes": "", "is_estimated": false,
           "cycle_id": optional, defaults to the active cycle}
    """
    body = _body()
    if "value" not in body:
        raise ValidationError("Reading value is required.")
    reading = _service().ledger.add_reading(
        meter_id=body.get("meter_id"),
        timestamp=body.get("timestamp"),
        value=body.get("value"),
        notes=body.get("notes", ""),
        is_estimated=_as_bool(body.get("is_estimated", False)),
        cycle_id=body.get("cycle_id"),
    )
    return jsonify(reading.to_dict()), 201


@api.route("/readings/<reading_id>", methods=["DELETE"])
def delete_reading(reading_id):
    _service().ledger.delete_reading(reading_id)
    return jsonify({"message": "Deleted successfully."})


@api.route("/readings/upload", methods=["POST"])
def upload_readings():
    """
    Import readings from a CSV file.

    Expected CSV format:
        meter_id,timestamp,value,notes,is_estimated
        main,2025-11-01T00:00:00Z,10234.5,,false
    """
    if "file" not in request.files:
        raise ValidationError("No file uploaded")
    file = request.files["file"]
    try:
        content = file.read().decode("utf-8")
    except UnicodeDecodeError:
        raise ValidationError("Uploaded file must be UTF-8 encoded CSV")
    rows = parse_csv_string(content)
    readings = _service().ledger.import_readings(rows)
    return jsonify({"upload_id": file.filename, "processed_count": len(readings)}), 201


# =============================================================================
# METERS, SLAB RATE CONFIGS AND SETTINGS
# =============================================================================

@api.route("/meters", methods=["GET"])
def list_meters():
    return jsonify([m.to_dict() for m in _service().store.list_meters()])


@api.route("/slab-configs", methods=["GET"])
def list_slab_configs():
    return jsonify([c.to_dict() for c in _service().configs.list_configs()])


@api.route("/slab-configs", methods=["POST"])
def create_slab_config():
    body = _body()
    try:
        config = SlabRateConfig.from_dict(body)
    except (KeyError, TypeError, ValueError) as e:
        raise ValidationError(f"Malformed slab rate configuration: {e}")
    config = _service().configs.create_config(config, activate=_as_bool(body.get("activate", False)))
    return jsonify(config.to_dict()), 201


@api.route("/slab-configs/<config_id>/activate", methods=["POST"])
def activate_slab_config(config_id):
    return jsonify(_service().configs.activate_config(config_id).to_dict())


@api.route("/settings", methods=["GET"])
def get_settings():
    return jsonify({"consumption_target": _service().configs.get_consumption_target()})


@api.route("/settings", methods=["PUT"])
def update_settings():
    target = _service().configs.set_consumption_target(_body().get("consumption_target"))
    return jsonify({"consumption_target": target})


# =============================================================================
# DASHBOARD, ANALYTICS AND ESTIMATES
# =============================================================================

@api.route("/dashboard/summary", methods=["GET"])
def dashboard_summary():
    return jsonify(_service().dashboard_summary().to_dict())


@api.route("/analytics/cycle-summary", methods=["GET"])
def analytics_cycle_summary():
    return jsonify(_service().analytics_cycle_summary())


@api.route("/analytics/meter-breakdown", methods=["GET"])
def analytics_meter_breakdown():
    return jsonify(_service().analytics_meter_breakdown())


@api.route("/estimate", methods=["GET"])
def estimate():
    """
    Cost of a consumption total under the active slab config.

    Query parameters:
        units: consumption in units (required)
    """
    try:
        units = float(request.args["units"])
    except (KeyError, ValueError):
        raise ValidationError("units query parameter is required and must be a number")
    if not math.isfinite(units):
        raise ValidationError("units must be a finite number")
    return jsonify(_service().estimate(units))
