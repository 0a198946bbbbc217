import configparser
import sys
from pathlib import Path

BRAND_CHOICES = ('Green Tel', 'Green Star')


def get_base_dir():
    if getattr(sys, 'frozen', False):
        return Path(sys.executable).parent
    return Path(__file__).parent


def build_config(db_host, db_port, db_user, db_pass, db_name, default_brand, debug=False):
    """Return the ConfigParser written to db_config.ini."""
    if default_brand not in BRAND_CHOICES:
        raise ValueError(f'default brand must be one of: {", ".join(BRAND_CHOICES)}')

    config = configparser.ConfigParser()
    config['database'] = {
        'host': db_host,
        'port': db_port,
        'username': db_user,
        'password': db_pass,
        'database': db_name
    }
    config['app'] = {
        'secret_key': 'AUTO_GENERATED',
        'default_brand': default_brand,
        'debug': str(bool(debug))
    }
    return config


def run_setup():
    print("=" * 60)
    print("Dual-Brand Back Office - First Time Setup")
    print("=" * 60)

    # Database settings
    print("\n[DATABASE CONFIGURATION]")
    db_host = input("Database Host [localhost]: ").strip() or 'localhost'
    db_port = input("Database Port [3306]: ").strip() or '3306'
    db_user = input("Database Username:  ").strip()
    db_pass = input("Database Password: ").strip()
    db_name = input("Database Name: ").strip()

    # App settings
    print("\n[APPLICATION SETTINGS]")
    default_brand = input(f"Default Brand {BRAND_CHOICES} [Green Tel]: ").strip() or 'Green Tel'

    config = build_config(db_host, db_port, db_user, db_pass, db_name, default_brand)

    # Save config next to the executable/script
    config_file = get_base_dir() / 'db_config.ini'
    with open(config_file, 'w') as f:
        config.write(f)

    print(f"\nConfiguration saved to {config_file}")
    print("\nSet ADMIN_PASSWORD before the first start so an Admin account can be created.")
    input("\nPress Enter to continue...")


if __name__ == '__main__':
    run_setup()
