"""
Test configuration and fixtures.

Every test gets its own SQLite file (via UBUNTU_EATS_DB_PATH), a fresh
schema, and a small cast of users: a donor, two NGOs, a farmer, two
volunteers and an admin.
"""
import datetime

import bcrypt
import pytest

import auth
import db
from time_utils import utcnow

_real_gensalt = bcrypt.gensalt


@pytest.fixture(autouse=True)
def database(tmp_path, monkeypatch):
    path = tmp_path / "ubuntu_eats_test.db"
    monkeypatch.setenv("UBUNTU_EATS_DB_PATH", str(path))
    # cheap hashes keep the suite fast
    monkeypatch.setattr(auth.bcrypt, "gensalt", lambda: _real_gensalt(rounds=4))
    db.ensure_schema()
    return str(path)


@pytest.fixture
def users():
    return {
        "donor": auth.register_user(
            "Thandi", "donor@greenvalley.co.za", "secret", "donor",
            phone="0110000001", organization="Green Valley Restaurant",
        ),
        "ngo": auth.register_user("Hope Community Centre", "ngo@hope.org", "secret", "ngo", phone="0110000002"),
        "ngo2": auth.register_user("Children's Shelter", "ngo@shelter.org", "secret", "ngo"),
        "farmer": auth.register_user("Green Fields Farm", "farmer@greenfields.co.za", "secret", "farmer"),
        "volunteer": auth.register_user(
            "Sipho", "sipho@volunteers.org", "secret", "volunteer",
            lat=-26.2041, lng=28.0473, max_distance_km=25,
        ),
        "volunteer2": auth.register_user("Lerato", "lerato@volunteers.org", "secret", "volunteer"),
        "admin": auth.register_user("Admin", "admin@ubuntueats.org", "secret", "admin"),
    }


@pytest.fixture
def make_listing(users):
    def _make(**overrides):
        data = {
            "donor_id": users["donor"],
            "food_type": "Fresh Sandwiches",
            "category": "fresh-meals",
            "quantity": 20,
            "unit": "units",
            "collect_by": utcnow() + datetime.timedelta(hours=4),
            "pickup_address": "12 Main Road, Johannesburg",
            "for_farmers": True,
        }
        data.update(overrides)
        return db.create_listing(data)
    return _make
