"""
Run database migrations without starting the web server.

Usage:
  python migrate.py

This script uses Flask-Migrate (Alembic) to apply schema migrations.
"""

import os
import sys


def main():
    # Keep app startup hooks disabled; run migration explicitly below.
    os.environ['RUN_STARTUP_DDL'] = '0'
    os.environ['RUN_STARTUP_BOOTSTRAP'] = '0'

    import timetable_app
    from flask_migrate import upgrade

    try:
        print("Applying database migrations...")
        with timetable_app.app.app_context():
            upgrade(directory='migrations')
        print("✓ Migrations completed successfully.")
    except Exception as e:
        print(f"✗ Migration failed: {e}", file=sys.stderr)
        import traceback
        traceback.print_exc()
        sys.exit(1)

    if os.environ.get('RUN_BOOTSTRAP_AFTER_MIGRATE', '0').strip().lower() in ('1', 'true', 'yes'):
        with timetable_app.app.app_context():
            timetable_app.create_bootstrap_admin()
        print("✓ Bootstrap admin checked.")


if __name__ == '__main__':
    main()
