import os
import sys
import logging
from logging.handlers import RotatingFileHandler

from sqlalchemy import inspect

from config import Config
from app import create_app, seed_essential_data
from models import db


def configure_logging(logfile=None):
    """Rotating file log plus console, level from LOGLEVEL."""
    logfile = logfile or Config.LOG_FILE

    file_handler = RotatingFileHandler(
        logfile,
        maxBytes=10*1024*1024,  # 10 MB
        backupCount=5,
        encoding='utf-8'
    )
    file_handler.setLevel(logging.INFO)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)

    logging.basicConfig(
        level=os.environ.get('LOGLEVEL', 'INFO'),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
        handlers=[file_handler, console_handler]
    )
    return logfile


def initialize_database(app):
    """Create missing tables and seed the first Admin user."""
    with app.app_context():
        if inspect(db.engine).has_table('user'):
            logging.info("Database tables already exist")
        else:
            logging.info("Creating database tables...")
        # create_all only creates what is missing
        db.create_all()

        if seed_essential_data(app):
            logging.info("Essential data seeded successfully")


if __name__ == '__main__':
    logfile = configure_logging()
    logging.info("Logging to: %s", logfile)
    logging.info("Running from: %s", Config.BASE_DIR)

    app = create_app()

    logging.info("Checking database initialization...")
    try:
        initialize_database(app)
    except Exception as e:
        logging.error("Failed to initialize database: %s", e)
        logging.error("Please check your database configuration in db_config.ini")
        sys.exit(1)

    host_bind = os.environ.get('FLASK_HOST', '0.0.0.0')
    port = int(os.environ.get('FLASK_PORT', '5000'))

    use_waitress = os.environ.get('USE_WAITRESS', '1') not in ('0', 'false', 'False')
    if use_waitress:
        from waitress import serve
        threads = int(os.environ.get('WAITRESS_THREADS', '8'))
        logging.info("Starting back office on %s:%s (Waitress, threads=%s)", host_bind, port, threads)
        serve(app, host=host_bind, port=port, threads=threads)
    else:
        # Dev-only fallback
        logging.info("Starting back office on %s:%s (Flask dev server)", host_bind, port)
        app.run(host=host_bind, port=port, debug=getattr(Config, 'DEBUG', False), use_reloader=False)
