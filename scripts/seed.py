# scripts/seed.py
"""
Seed demo users and a group, then print an access token for each user.
Safe to run more than once: existing users and the demo group are reused.
"""
import sys
from pathlib import Path

# Ensure UTF-8 capable stdout/stderr on Windows terminals
try:
    sys.stdout.reconfigure(encoding="utf-8")
    sys.stderr.reconfigure(encoding="utf-8")
except Exception:
    pass

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from relay.db.session import get_db_session, test_db_connection, init_db
from relay.core.jwt_auth import create_access_token
from relay.models.group import Group
from relay.models.user import User
from relay.services import get_group_service

DEMO_USERS = [
    {"first_name": "Alice", "last_name": "Martin", "email": "alice@example.com", "country": "FR"},
    {"first_name": "Bob", "last_name": "Okafor", "email": "bob@example.com", "country": "NG"},
    {"first_name": "Carol", "last_name": "Silva", "email": "carol@example.com", "country": "BR"},
    {"first_name": "Admin", "last_name": "User", "email": "admin@example.com", "country": "US", "is_admin": True},
]
DEMO_GROUP = "Demo Group"

print("=" * 60)
print("Seeding demo data")
print("=" * 60)

print("\n1) Testing database connection...")
if not test_db_connection():
    print("[ERROR] Database connection failed!")
    print("   Please check:")
    print("   - PostgreSQL is running")
    print("   - Database exists")
    print("   - .env configuration is correct")
    sys.exit(1)
print("[OK] Database connected")

print("\n2) Initializing database tables...")
try:
    init_db()
    print("[OK] Tables initialized")
except Exception as e:
    print(f"[ERROR] Failed to initialize tables: {e}")
    sys.exit(1)

print("\n3) Creating users and group...")
tokens = []
try:
    with get_db_session() as db:
        users = []
        for fields in DEMO_USERS:
            user = db.query(User).filter(User.email == fields["email"]).first()
            if user:
                print(f"[WARN] User '{fields['email']}' already exists")
            else:
                user = User(is_verified=True, **fields)
                db.add(user)
                db.flush()
                print(f"[OK] Created user '{fields['email']}' (id={user.id})")
            users.append(user)
        db.commit()

        alice, bob = users[0], users[1]
        groups = get_group_service()
        group = db.query(Group).filter(Group.name == DEMO_GROUP).first()
        if group:
            print(f"[WARN] Group '{DEMO_GROUP}' already exists (id={group.id})")
        else:
            group = groups.create_group(db, alice.id, DEMO_GROUP, "Seeded group for local testing")
            groups.add_member(db, group.id, bob.id, alice.id)
            print(f"[OK] Created group '{DEMO_GROUP}' (id={group.id}) with Alice (admin) and Bob")

        for user in users:
            tokens.append((user.email, user.id, create_access_token(user.id, user.email, user.role)))

except Exception as e:
    print(f"[ERROR] Error: {e}")
    sys.exit(1)

print("\n" + "=" * 60)
print("DEMO DATA READY!")
print("=" * 60)
print("\nAccess tokens:")
for email, user_id, token in tokens:
    print(f"\n   {email} (id={user_id})")
    print(f"   {token}")
print("\nConnect with: ws://localhost:8100/ws?token=<token>")
