import logging

from flask import Flask
from flask_cors import CORS
from flask_pymongo import PyMongo

from billing.config import Config
from billing.db import ensure_indexes
from billing.notifications import build_senders
from billing.processor import build_processor
from billing.reconciler import PaymentReconciler

mongo = PyMongo()


def create_app(config=None, db=None, processor=None, email_sender=None, sms_sender=None):
    """Build the Flask app. ``db`` and the collaborators are injectable for tests."""
    config = config or Config()
    logging.basicConfig(level=config.LOG_LEVEL,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    app = Flask(__name__)

    if db is None:
        # MongoDB Configuration
        app.config["MONGO_URI"] = config.MONGO_URI
        mongo.init_app(app)
        db = mongo.cx[config.MONGO_DB_NAME]
        processor = processor or build_processor(config)
        if email_sender is None and sms_sender is None:
            email_sender, sms_sender = build_senders(config)

    ensure_indexes(db)

    # Enable CORS
    CORS(app)

    app.extensions["billing"] = {
        "config": config,
        "db": db,
        "processor": processor,
        "email_sender": email_sender,
        "sms_sender": sms_sender,
        "reconciler": PaymentReconciler(db, default_tenant_id=config.DEFAULT_CLINIC_ID),
    }

    from billing.routes import bp
    app.register_blueprint(bp)

    return app
