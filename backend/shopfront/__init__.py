# backend/shopfront/__init__.py
from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException, MethodNotAllowed

from .config import Config
from .errors import ShopError
from .extensions import db, migrate


CORS_ALLOWED_HEADERS = "Authorization, Content-Type, Stripe-Signature"
CORS_ALLOWED_METHODS = "GET,POST,PUT,DELETE,OPTIONS"


def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Register blueprints
    from .routes.system import system_bp
    from .routes.checkout import checkout_bp
    from .routes.webhooks import webhooks_bp
    from .routes.admin_orders import admin_orders_bp
    from .routes.admin_gift_cards import admin_gift_cards_bp
    from .routes.admin_discounts import admin_discounts_bp
    from .routes.customer_auth import customer_auth_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(checkout_bp)
    app.register_blueprint(webhooks_bp)
    app.register_blueprint(admin_orders_bp)
    app.register_blueprint(admin_gift_cards_bp)
    app.register_blueprint(admin_discounts_bp)
    app.register_blueprint(customer_auth_bp)

    @app.before_request
    def answer_preflight():
        if request.method == "OPTIONS":
            return app.make_default_options_response()

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        if origin in app.config["CORS_ALLOWED_ORIGINS"]:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = CORS_ALLOWED_HEADERS
            response.headers["Access-Control-Allow-Methods"] = CORS_ALLOWED_METHODS
        return response

    @app.errorhandler(ShopError)
    def handle_shop_error(e: ShopError):
        db.session.rollback()
        response = jsonify({"error": e.message})
        retry_after = getattr(e, "retry_after", None)
        if retry_after is not None:
            response.headers["Retry-After"] = str(retry_after)
        return response, e.status

    @app.errorhandler(MethodNotAllowed)
    def handle_method_not_allowed(e):
        return jsonify({"error": "Method not allowed"}), 405

    @app.errorhandler(HTTPException)
    def handle_http_exception(e: HTTPException):
        return jsonify({"error": e.name}), e.code

    @app.errorhandler(Exception)
    def handle_unexpected(e: Exception):
        db.session.rollback()
        app.logger.exception("Unhandled error")
        return jsonify({"error": "Internal server error"}), 500

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
