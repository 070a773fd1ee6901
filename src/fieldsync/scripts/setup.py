"""
Interactive setup wizard for the sync engine.

Prompts for the technician's email and password once, exchanges them for
session tokens, and saves the tokens to ~/.fieldsync/session/ with
owner-only permissions (0700 dir / 0600 file).

After setup, the worker and the API read the signed-in user from the saved
session; the password is never stored on disk.

Usage:
    python -m fieldsync setup
    python -m fieldsync.scripts.setup   (direct invocation)

Re-run any time the session expires.
"""
import asyncio
import getpass
import sys

from fieldsync.config import get_settings
from fieldsync.remote.client import RemoteStoreClient
from fieldsync.remote.session import SessionStore


async def _sign_in(session: SessionStore, email: str, password: str) -> None:
    client = RemoteStoreClient(session)
    try:
        result = await client.sign_in(email, password)
    finally:
        await client.aclose()
    if not result.ok:
        raise RuntimeError(result.error)
    if not isinstance(result.data, dict) or not result.data.get("access_token"):
        raise RuntimeError("Sign-in response did not include an access token")
    session.save(result.data)


def run_setup() -> None:
    session = SessionStore()
    settings = get_settings()

    print("\nFieldsync Setup\n")
    if not settings.remote_url or not settings.remote_anon_key:
        print("Error: REMOTE_URL and REMOTE_ANON_KEY must be set (environment or .env).")
        sys.exit(1)

    print("Your password will NOT be saved to disk.")
    print(f"Session tokens will be stored in: {session._session_dir}\n")

    if session.has_session():
        print("An existing session was found.")
        overwrite = input("Overwrite it with a new login? [y/N] ").strip().lower()
        if overwrite != "y":
            print("Setup cancelled. Existing session unchanged.")
            sys.exit(0)

    email = input("Email: ").strip()
    if not email:
        print("Error: email cannot be empty.")
        sys.exit(1)

    password = getpass.getpass("Password: ")
    if not password:
        print("Error: password cannot be empty.")
        sys.exit(1)

    print("\nSigning in...")
    try:
        asyncio.run(_sign_in(session, email, password))
    except Exception as exc:
        print(f"\nSign-in failed: {exc}")
        print("Check your email and password and try again.")
        sys.exit(1)

    user = session.get_current_user()
    print(f"\nSigned in as {user.email if user else email}")
    print(f"Session saved to {session._session_dir}")
    print("\nStart syncing with:  python -m fieldsync")
    print("If the session expires, just re-run:  python -m fieldsync setup\n")


if __name__ == "__main__":
    run_setup()
