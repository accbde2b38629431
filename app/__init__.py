import logging
import os

from dotenv import load_dotenv
from flask import Flask, jsonify

from app.utils.logging_config import setup_logging


def _validate_environment(app_settings) -> None:
    """Check for required environment variables and raise RuntimeError if missing."""
    logger = logging.getLogger(__name__)
    required_vars: list[str] = []
    if app_settings.OBJECT_STORE.strip().lower() == "gcs":
        required_vars.append("GCS_BUCKET")
    if app_settings.KV_BACKEND.strip().lower() == "firestore":
        required_vars.append("GCP_PROJECT_ID")

    missing_vars = sorted(var for var in set(required_vars) if not os.getenv(var))
    if missing_vars:
        message = f"Missing required environment variables: {', '.join(missing_vars)}"
        logger.critical(message)
        raise RuntimeError(message)


def create_app(app_settings=None, **service_overrides):
    """Create and configure an instance of the Flask application.

    ``service_overrides`` (``kv``, ``objects``, ``chat``, ``registry``,
    ``detector``) replace the adapters built from settings.
    """
    load_dotenv()

    # Set up logging as early as possible
    setup_logging()
    logger = logging.getLogger(__name__)

    from app.config import AppSettings
    from app.extensions import EXTENSION_KEY, build_services

    app_settings = app_settings or AppSettings()

    project_id = os.getenv("GOOGLE_CLOUD_PROJECT")
    if not project_id and app_settings.GCP_PROJECT_ID:
        os.environ["GOOGLE_CLOUD_PROJECT"] = app_settings.GCP_PROJECT_ID

    _validate_environment(app_settings)

    logger.info("Application starting with configuration:")
    logger.info(f"  ENV: {app_settings.ENV}")
    logger.info(f"  KV_BACKEND: {app_settings.KV_BACKEND}")
    logger.info(f"  OBJECT_STORE: {app_settings.OBJECT_STORE}")
    logger.info(f"  ARCHIVE_CONCURRENCY: {app_settings.ARCHIVE_CONCURRENCY}")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_mapping(
        ENV_NAME=app_settings.ENV,
        JSON_SORT_KEYS=False,
    )

    services = build_services(app_settings, **service_overrides)
    app.extensions[EXTENSION_KEY] = services

    initial_setting = os.getenv("ARCHIVAL_SETTINGS_JSON")
    if initial_setting:
        services.config_store.apply_setting(initial_setting)

    from .routes import api, utility

    if "api" not in app.blueprints:
        app.register_blueprint(api.bp)
    if "utility" not in app.blueprints:
        app.register_blueprint(utility.bp)

    def internal_server_error(e):
        logger.error("An internal server error occurred: %s", e, exc_info=True)
        return jsonify({"error": "Internal server error"}), 500

    def not_found(e):
        return jsonify({"error": "Not found"}), 404

    app.register_error_handler(500, internal_server_error)
    app.register_error_handler(404, not_found)

    return app
