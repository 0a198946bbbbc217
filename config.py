import os
import configparser
from pathlib import Path
import sys


def engine_options(database_uri):
    """SQLAlchemy engine options for the configured database URL."""
    # Pool settings only make sense for the MySQL/MariaDB driver
    if database_uri.startswith('mysql'):
        return {
            'pool_pre_ping': True,
            'pool_recycle': 280,
            'pool_size': 10,
            'max_overflow': 20,
            # Each statement sees rows committed by writers that held the lock before us
            'isolation_level': 'READ COMMITTED',
            'connect_args': {
                'charset': 'utf8mb4',
                'connect_timeout': 10,
            }
        }
    return {
        'connect_args': {'check_same_thread': False, 'timeout': 30},
    }


class Config:
    if getattr(sys, 'frozen', False):
        BASE_DIR = Path(sys.executable).parent
    else:
        BASE_DIR = Path(__file__).resolve().parent

    CONFIG_FILE = BASE_DIR / 'db_config.ini'

    # ✅ LOG DIRECTORY CONFIGURATION
    @staticmethod
    def get_log_dir():
        """Get log directory with write permissions."""
        env_log = os.environ.get('BACKOFFICE_LOG_DIR')
        if env_log:
            log_dir = Path(env_log)
            try:
                log_dir.mkdir(parents=True, exist_ok=True)
                return log_dir
            except OSError:
                pass

        try:
            if os.name == 'nt':
                base = Path(os.environ.get('APPDATA', Path.home() / 'AppData' / 'Roaming'))
                log_dir = base / 'DuoBrand' / 'logs'
            else:
                log_dir = Path.home() / '.local' / 'share' / 'duobrand' / 'logs'
            log_dir.mkdir(parents=True, exist_ok=True)
            return log_dir
        except OSError:
            pass

        try:
            log_dir = Config.BASE_DIR / 'logs'
            log_dir.mkdir(parents=True, exist_ok=True)
            return log_dir
        except OSError:
            import tempfile
            return Path(tempfile.gettempdir()) / 'duobrand_logs'

    LOG_DIR = get_log_dir.__func__()
    LOG_FILE = LOG_DIR / 'backoffice.log'

    SECRET_FILE = BASE_DIR / '.secret_key'

    config_parser = configparser.ConfigParser()
    if CONFIG_FILE.exists():
        config_parser.read(CONFIG_FILE)

    if config_parser.sections():
        db_host = config_parser.get('database', 'host', fallback='localhost')
        db_port = config_parser.get('database', 'port', fallback='3306')
        db_user = config_parser.get('database', 'username', fallback='backoffice_app')
        db_pass = config_parser.get('database', 'password', fallback='')
        db_name = config_parser.get('database', 'database', fallback='backoffice')
        SQLALCHEMY_DATABASE_URI = f'mysql+pymysql://{db_user}:{db_pass}@{db_host}:{db_port}/{db_name}?charset=utf8mb4'
        DEBUG = config_parser.getboolean('app', 'debug', fallback=False)
        DEFAULT_BRAND = config_parser.get('app', 'default_brand', fallback='Green Tel')
    else:
        SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL', '')
        DEBUG = os.environ.get('FLASK_DEBUG', 'False').lower() == 'true'
        DEFAULT_BRAND = os.environ.get('DEFAULT_BRAND', 'Green Tel')

    if not SQLALCHEMY_DATABASE_URI:
        print("WARNING: DATABASE_URL not configured.  Using SQLite fallback.")
        SQLALCHEMY_DATABASE_URI = f'sqlite:///{BASE_DIR / "backoffice.db"}'

    SECRET_KEY = os.environ.get('SECRET_KEY')
    if not SECRET_KEY and config_parser.sections():
        SECRET_KEY = config_parser.get('app', 'secret_key', fallback=None)
        if SECRET_KEY == 'AUTO_GENERATED':
            SECRET_KEY = None

    if not SECRET_KEY:
        try:
            if SECRET_FILE.exists():
                SECRET_KEY = SECRET_FILE.read_text().strip()
            else:
                SECRET_KEY = os.urandom(32).hex()
                SECRET_FILE.write_text(SECRET_KEY)
                try:
                    os.chmod(SECRET_FILE, 0o600)
                except OSError:
                    pass
        except OSError:
            SECRET_KEY = os.urandom(32).hex()

    SQLALCHEMY_TRACK_MODIFICATIONS = False

    SQLALCHEMY_ENGINE_OPTIONS = engine_options(SQLALCHEMY_DATABASE_URI)

    SESSION_COOKIE_SECURE = False
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'
    PERMANENT_SESSION_LIFETIME = 3600

    CACHE_TYPE = 'SimpleCache'
    RATELIMIT_STORAGE_URI = os.environ.get('RATELIMIT_STORAGE_URI', 'memory://')

    # Initial admin account, created on start-up only when no Admin exists
    ADMIN_USERNAME = os.environ.get('ADMIN_USERNAME', 'admin')
    ADMIN_PASSWORD = os.environ.get('ADMIN_PASSWORD')

    # Brand name -> document number prefix
    BRANDS = {
        'Green Tel': 'GT',
        'Green Star': 'GS',
    }

    # Per-unit factory charges for repaired units (PCB-level vs minor repairs)
    REPAIR_COST_HIGH = os.environ.get('REPAIR_COST_HIGH', '0')
    REPAIR_COST_LOW = os.environ.get('REPAIR_COST_LOW', '0')

    # Role -> modules the role may open. Validated against the closed role/module sets at start-up.
    ROLE_PERMISSIONS = {
        'Admin': {
            'modules': ['all'],
        },
        'Manager': {
            'modules': ['dashboard', 'inventory', 'sales', 'customers', 'purchase', 'hrm', 'reports', 'replacement', 'ledger'],
        },
        'Staff': {
            'modules': ['dashboard', 'inventory', 'sales', 'customers', 'purchase', 'replacement'],
        },
        'Sales': {
            'modules': ['dashboard', 'sales', 'customers'],
        },
        'Dealer': {
            'modules': ['dashboard', 'ledger'],
        },
        'Customer': {
            'modules': ['ecommerce'],
        },
    }
