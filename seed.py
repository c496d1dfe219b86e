"""
Demo accounts for local development.

Run ``python seed.py`` against the configured database, or start the API with
``SEED_TEST_USERS=true``. Accounts that already exist are left alone.
"""

import logging

from errors import ConflictError

logger = logging.getLogger(__name__)

TEST_PASSWORD = "test1234"
PLACEHOLDER_PHOTO = "https://via.placeholder.com/150"

TEST_USERS = [
    {
        "name": "Test User 1",
        "email": "test1@example.com",
        "age": 25,
        "bio": "This is test user 1",
        "location": {"latitude": 40.7128, "longitude": -74.006, "city": "New York"},
        "preferences": {"age_range": {"min": 20, "max": 35}, "max_distance": 50, "interests": ["coding", "music", "travel"]},
    },
    {
        "name": "Test User 2",
        "email": "test2@example.com",
        "age": 28,
        "bio": "This is test user 2",
        "location": {"latitude": 40.758, "longitude": -73.9855, "city": "New York"},
        "preferences": {"age_range": {"min": 22, "max": 30}, "max_distance": 40, "interests": ["photography", "hiking", "coffee"]},
    },
    {
        "name": "Test User 3",
        "email": "test3@example.com",
        "age": 23,
        "bio": "This is test user 3",
        "location": {"latitude": 40.7505, "longitude": -73.9934, "city": "New York"},
        "preferences": {"age_range": {"min": 20, "max": 28}, "max_distance": 60, "interests": ["reading", "movies", "cooking"]},
    },
    {
        "name": "Test User 4",
        "email": "test4@example.com",
        "age": 30,
        "bio": "This is test user 4",
        "location": {"latitude": 40.7282, "longitude": -73.9942, "city": "New York"},
        "preferences": {"age_range": {"min": 25, "max": 35}, "max_distance": 45, "interests": ["gaming", "tech", "sports"]},
    },
    {
        "name": "Test User 5",
        "email": "test5@example.com",
        "age": 27,
        "bio": "This is test user 5",
        "location": {"latitude": 40.7614, "longitude": -73.9776, "city": "New York"},
        "preferences": {"age_range": {"min": 23, "max": 32}, "max_distance": 55, "interests": ["art", "music", "travel"]},
    },
]


def seed_test_users(auth, profiles) -> list:
    """Create any missing demo users; returns the emails that were created."""
    created = []
    for account in TEST_USERS:
        try:
            user = auth.register(account["name"], account["email"], TEST_PASSWORD, account["age"], [PLACEHOLDER_PHOTO])
        except ConflictError:
            logger.info("Exists: %s", account["email"])
            continue
        profiles.update_profile(
            user["id"],
            user["id"],
            {"bio": account["bio"], "location": account["location"], "preferences": account["preferences"]},
        )
        created.append(account["email"])
        logger.info("Created: %s (password: %s)", account["email"], TEST_PASSWORD)
    return created


if __name__ == "__main__":
    from database import ensure_indexes, get_database
    from services import AuthService, ProfileService

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    db = get_database()
    ensure_indexes(db)
    seed_test_users(AuthService(db), ProfileService(db))
