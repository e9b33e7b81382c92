from flask import Flask

from marksync.api import api_bp
from marksync.auth import auth_bp
from marksync.config import Config
from marksync.extensions import db, login_manager


def create_app(config_object=Config):
    app = Flask(__name__)
    app.config.from_object(config_object)

    db.init_app(app)
    login_manager.init_app(app)

    app.register_blueprint(auth_bp)
    app.register_blueprint(api_bp)

    @login_manager.unauthorized_handler
    def unauthorized():
        return {"error": "authentication required"}, 401

    @app.cli.command("init-db")
    def init_db_command():
        db.create_all()
        print("Initialized Marksync database.")

    with app.app_context():
        db.create_all()

    return app
