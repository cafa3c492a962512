"""First-login provisioning: profile row and default categories."""

import logging
from typing import Any, Optional

from sqlalchemy import DateTime, bindparam, text

from todo_mcp.exceptions import PermissionDeniedError
from todo_mcp.models.db_models import get_session_factory, init_db
from todo_mcp.models.schema import (DEFAULT_CATEGORIES, generate_id,
                                    to_storage_time, utc_now)

logger = logging.getLogger(__name__)


class ProvisioningService:
    """Creates the rows every user starts with.

    Safe to call on every login: existing rows are left untouched.
    """

    def __init__(self, engine: Optional[Any] = None):
        self.engine = engine or init_db()
        self.session_factory = get_session_factory(self.engine)

    def provision_user(self, user_id: str) -> int:
        """Create the user's profile and the four default categories.

        Args:
            user_id: Verified external user id.

        Returns:
            Number of categories created by this call (0 when already provisioned).
        """
        if not user_id:
            raise PermissionDeniedError()

        now = to_storage_time(utc_now())
        created = 0
        with self.session_factory() as session:
            # INSERT OR IGNORE skips rows that already exist, including races
            session.execute(
                text(
                    "INSERT OR IGNORE INTO profiles (id, created_at, updated_at) "
                    "VALUES (:id, :now, :now)"
                ).bindparams(bindparam("now", type_=DateTime)),
                {"id": user_id, "now": now},
            )
            for name, color in DEFAULT_CATEGORIES:
                result = session.execute(
                    text(
                        "INSERT OR IGNORE INTO categories "
                        "(id, user_id, name, color, created_at, updated_at) "
                        "VALUES (:id, :user_id, :name, :color, :now, :now)"
                    ).bindparams(bindparam("now", type_=DateTime)),
                    {
                        "id": generate_id(),
                        "user_id": user_id,
                        "name": name,
                        "color": color,
                        "now": now,
                    },
                )
                created += result.rowcount
            session.commit()

        if created:
            logger.info(f"Provisioned {user_id} with {created} default categories")
        return created
