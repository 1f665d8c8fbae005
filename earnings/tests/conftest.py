from uuid import uuid4

import pytest

from earnings.config import EarningsSettings
from earnings.service import EarningsService
from earnings.sql_storage import SqlStorage
from earnings.storage import InMemoryStorage


@pytest.fixture
def settings():
    return EarningsSettings(_env_file=None)


@pytest.fixture
def service(settings):
    return EarningsService(InMemoryStorage(), settings)


@pytest.fixture
def sql_service(settings):
    storage = SqlStorage("sqlite:///:memory:")
    storage.create_all()
    return EarningsService(storage, settings)


@pytest.fixture
def make_user(service):
    def _make(name="user", balance=0, referral_code=None, svc=None):
        svc = svc or service
        user = svc.accounts.register(f"{name}-{uuid4().hex[:8]}@example.com", name, referral_code)
        if balance:
            svc.balance.apply_delta(user.id, balance, True, "Opening balance")
        return user
    return _make


@pytest.fixture
def make_task(service):
    def _make(reward=1000, svc=None, **kwargs):
        svc = svc or service
        return svc.tasks.add_task(kwargs.pop("title", "Install app"), kwargs.pop("provider", "adgem"), reward, **kwargs)
    return _make
