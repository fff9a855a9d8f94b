"""Maintenance commands for the learning platform database.
Usage:
    python scripts/manage.py init-db
    python scripts/manage.py sweep-permissions
    python scripts/manage.py promote-admin EMAIL
"""
import sys
import argparse
import logging
import pathlib
# Ensure `backend/` is on sys.path so `learning_platform` imports work when running this script directly
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
from sqlmodel import Session
from learning_platform.config import settings
from learning_platform.database import engine, create_db_and_tables
from learning_platform.errors import PlatformError
from learning_platform.models import Role
from learning_platform.permissions import PermissionService
from learning_platform.repositories import Repositories
from learning_platform.services import StudentService


def init_db() -> int:
    create_db_and_tables()
    print(f'Tables created in {settings.DATABASE_URL}')
    return 0


def sweep_permissions() -> int:
    """Deactivate expired grants once, e.g. from cron when the in-app sweeper is disabled."""
    with Session(engine) as session:
        count = PermissionService(Repositories(session)).sweep_expired()
    print(f'Deactivated {count} expired permission(s)')
    return 0


def promote_admin(email: str) -> int:
    """Give the student registered with `email` the admin role."""
    with Session(engine) as session:
        repos = Repositories(session)
        student = repos.students.find_by_email(email)
        if not student:
            print(f'No student registered with {email}')
            return 1
        StudentService(repos).set_role(student.id, Role.ADMIN)
    print(f'{email} is now an admin')
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    sub = parser.add_subparsers(dest='command', required=True)
    sub.add_parser('init-db', help='Create missing tables')
    sub.add_parser('sweep-permissions', help='Deactivate expired permissions now')
    promote = sub.add_parser('promote-admin', help='Grant the admin role to a student')
    promote.add_argument('email')
    args = parser.parse_args(argv)
    logging.basicConfig(level=settings.LOG_LEVEL)
    try:
        if args.command == 'init-db':
            return init_db()
        if args.command == 'sweep-permissions':
            return sweep_permissions()
        return promote_admin(args.email)
    except PlatformError as e:
        print(f'{e.kind}: {e.message}')
        return 1


if __name__ == '__main__':
    sys.exit(main())
