"""Tests for first-login provisioning."""
import pytest
from sqlalchemy import func, select

from tests.conftest import OTHER_USER, USER
from todo_mcp.exceptions import PermissionDeniedError
from todo_mcp.models.db_models import DBProfile
from todo_mcp.models.schema import DEFAULT_CATEGORIES


class TestProvisionUser:
    """Tests for ProvisioningService.provision_user."""

    def test_creates_default_categories(self, provisioning_service, todo_service):
        created = provisioning_service.provision_user(USER)

        categories = {c.name: c.color for c in todo_service.list_categories(USER)}
        assert created == 4
        assert categories == dict(DEFAULT_CATEGORIES)

    def test_is_idempotent(self, provisioning_service, todo_service):
        assert provisioning_service.provision_user(USER) == 4
        assert provisioning_service.provision_user(USER) == 0

        assert len(todo_service.list_categories(USER)) == 4

    def test_creates_one_profile(self, provisioning_service, engine):
        provisioning_service.provision_user(USER)
        provisioning_service.provision_user(USER)

        with engine.connect() as conn:
            count = conn.scalar(
                select(func.count()).select_from(DBProfile).where(DBProfile.id == USER)
            )
        assert count == 1

    def test_keeps_existing_customizations(self, provisioning_service, todo_service):
        provisioning_service.provision_user(USER)
        work = next(c for c in todo_service.list_categories(USER) if c.name == "Work")
        todo_service.update_category(USER, work.id, color="#000000")

        provisioning_service.provision_user(USER)

        assert todo_service.get_category(USER, work.id).color == "#000000"

    def test_users_are_provisioned_separately(self, provisioning_service, todo_service):
        provisioning_service.provision_user(USER)
        provisioning_service.provision_user(OTHER_USER)

        mine = {c.id for c in todo_service.list_categories(USER)}
        theirs = {c.id for c in todo_service.list_categories(OTHER_USER)}
        assert len(mine) == len(theirs) == 4
        assert mine.isdisjoint(theirs)

    def test_recreates_only_missing_defaults(self, provisioning_service, todo_service):
        provisioning_service.provision_user(USER)
        study = next(c for c in todo_service.list_categories(USER) if c.name == "Study")
        todo_service.delete_category(USER, study.id)

        assert provisioning_service.provision_user(USER) == 1
        assert len(todo_service.list_categories(USER)) == 4

    @pytest.mark.parametrize("user_id", [None, ""])
    def test_requires_identity(self, provisioning_service, user_id):
        with pytest.raises(PermissionDeniedError):
            provisioning_service.provision_user(user_id)
