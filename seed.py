#!/usr/bin/env python3
# seed.py

import os

from app import create_app
from db import db
from models.user import User

# Admin account definition
ADMIN_EMAIL = os.environ.get("SEED_ADMIN_EMAIL", "admin@dialogue.local")
ADMIN_PASSWORD = os.environ.get("SEED_ADMIN_PASSWORD", "password")


def seed_admin():
    """
    Creates or updates the SuperAdmin user.

    Ensures a user with ADMIN_EMAIL exists, has the role 'SuperAdmin', is
    active, and has their password set to ADMIN_PASSWORD. It can be run
    multiple times without causing errors.
    """
    app = create_app()
    with app.app_context():
        user = User.query.filter_by(email=ADMIN_EMAIL).first()

        if not user:
            user = User(email=ADMIN_EMAIL, name="System Administrator", role="SuperAdmin")
            user.set_password(ADMIN_PASSWORD)
            db.session.add(user)
            print(f"➕ Created SuperAdmin account `{ADMIN_EMAIL}`.")
        else:
            user.role = "SuperAdmin"
            user.is_active = True
            user.set_password(ADMIN_PASSWORD)
            print(f"🔄 Updated SuperAdmin account `{ADMIN_EMAIL}` with a fresh password.")

        db.session.commit()
        print("✅ Seeded the SuperAdmin account successfully.")


if __name__ == "__main__":
    seed_admin()
