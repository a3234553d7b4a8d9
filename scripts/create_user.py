import argparse
import asyncio
import getpass
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from useradmin.config import load_settings
from useradmin.exceptions import UserAdminError
from useradmin.hashing import build_hash_provider
from useradmin.stores import CredentialStore
from useradmin.users import UserService


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create a user in the Authelia users file")
    parser.add_argument("username", help="Login name for the user")
    parser.add_argument("email", help="Email address for the user")
    parser.add_argument("--displayname", default=None, help="Display name (defaults to the username)")
    parser.add_argument(
        "--group",
        dest="groups",
        action="append",
        default=None,
        help="Group membership; repeat for several groups (default: users)",
    )
    parser.add_argument(
        "--users-file",
        default=None,
        help="Path to users.yml (defaults to USERS_FILE or $CONFIG_DIR/users.yml)",
    )
    return parser.parse_args()


def prompt_for_password() -> str:
    for _ in range(3):
        password = getpass.getpass("Password: ")
        confirm = getpass.getpass("Password (repeat): ")
        if not password:
            print("Password must not be empty. Try again.", file=sys.stderr)
            continue
        if password != confirm:
            print("Passwords do not match. Try again.", file=sys.stderr)
            continue
        return password
    raise SystemExit("Failed to set password after three attempts.")


def main() -> int:
    args = parse_args()
    if "@" not in args.email:
        print("Error: email address looks invalid.", file=sys.stderr)
        return 1
    password = prompt_for_password()

    settings = load_settings()
    users_file = Path(args.users_file).expanduser() if args.users_file else settings.users_file
    service = UserService(CredentialStore(users_file), build_hash_provider(settings))

    try:
        record = asyncio.run(
            service.create(
                args.username.strip(),
                password,
                email=args.email.strip(),
                groups=args.groups,
                displayname=args.displayname,
            )
        )
    except UserAdminError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    print(f"Created user {record.username} <{record.email}> in {users_file}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
