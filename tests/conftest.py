import pytest
from unittest.mock import Mock
from fastapi import BackgroundTasks
from beanie import PydanticObjectId

from mongosnap.services import rate_limit
from tests.factories import build_request, make_user


@pytest.fixture
def mock_background_tasks():
    return Mock(spec=BackgroundTasks)


@pytest.fixture
def sample_object_id():
    return PydanticObjectId()


@pytest.fixture
def user():
    return make_user()


@pytest.fixture
def snapx_user():
    return make_user(is_snapx_user=Mock(return_value=True), current_plan=Mock(return_value="snapx"))


@pytest.fixture
def admin_user():
    return make_user(is_admin=True, email="admin@mongosnap.app")


@pytest.fixture
def request_factory():
    return build_request


@pytest.fixture(autouse=True)
def clear_rate_limits():
    rate_limit.reset()
    yield
    rate_limit.reset()
