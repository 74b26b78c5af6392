"""
Feature Flag Test Configuration
Provides shared fixtures: a temporary database, a small account tree,
actors with different rights, and a service wired over them.
"""
import os
import sys
from types import SimpleNamespace

import pytest

# Ensure project root is importable
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from src.core.flags.context import Context
from src.core.flags.database import FlagDatabase
from src.core.flags.definitions import FeatureDefinition, FeatureRegistry
from src.core.flags.models import Actor, ContextKind, FlagState
from src.core.flags.service import FeatureFlagService


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def tmp_data_dir(tmp_path):
    """Provide an isolated temporary data directory for a test."""
    data_dir = tmp_path / "flags_data"
    data_dir.mkdir()
    return data_dir


@pytest.fixture
def env_override(monkeypatch):
    """Factory fixture to set env vars scoped to a single test.

    Usage:
        def test_something(env_override):
            env_override(FLAGS_CACHE_ENABLED="false")
    """
    def _set(**kwargs):
        for key, value in kwargs.items():
            monkeypatch.setenv(key, value)
    return _set


@pytest.fixture
def flag_db(tmp_data_dir):
    """A fresh FlagDatabase in a temp directory."""
    db = FlagDatabase(data_dir=str(tmp_data_dir))
    yield db
    db.close()


@pytest.fixture
def tree():
    """root(1) -> sub(2) -> course(10); root(1) -> course(11); user(100).

    A second root account (50) with its own course (51) stays untouched.
    """
    root = Context.root_account("1", name="Root")
    sub = Context.account("2", root, name="Sub")
    course = Context.course("10", sub, name="Course Under Sub")
    root_course = Context.course("11", root, name="Course Under Root")
    user = Context.user("100", root, name="Some User")
    other_root = Context.root_account("50", name="Other Root")
    other_course = Context.course("51", other_root)
    return SimpleNamespace(
        root=root, sub=sub, course=course, root_course=root_course,
        user=user, other_root=other_root, other_course=other_course,
    )


@pytest.fixture
def actors():
    return SimpleNamespace(
        site_admin=Actor(id="sa", name="Site Admin", site_admin=True),
        root_admin=Actor(id="ra", name="Root Admin", admin_of=frozenset({"Account:1"})),
        sub_admin=Actor(id="sb", name="Sub Admin", admin_of=frozenset({"Account:2"})),
        instructor=Actor(id="t", name="Instructor", admin_of=frozenset({"Course:10"})),
        student=Actor(id="s", name="Student", member_of=frozenset({"Course:10"})),
        user=Actor(id="100", name="Some User"),
    )


def make_definitions():
    return [
        FeatureDefinition(name="fancy_wickets", applies_to=ContextKind.COURSE,
                          state=FlagState.ALLOWED, root_opt_in=True),
        FeatureDefinition(name="course_feature", applies_to=ContextKind.COURSE,
                          state=FlagState.ALLOWED),
        FeatureDefinition(name="course_default_on", applies_to=ContextKind.COURSE,
                          state=FlagState.ON),
        FeatureDefinition(name="course_default_off", applies_to=ContextKind.COURSE,
                          state=FlagState.OFF),
        FeatureDefinition(name="account_feature", applies_to=ContextKind.ACCOUNT,
                          state=FlagState.ALLOWED),
        FeatureDefinition(name="root_feature", applies_to=ContextKind.ROOT_ACCOUNT,
                          state=FlagState.OFF),
        FeatureDefinition(name="user_feature", applies_to=ContextKind.USER,
                          state=FlagState.ALLOWED),
        FeatureDefinition(name="secret_feature", applies_to=ContextKind.COURSE,
                          state=FlagState.ALLOWED, hidden=True),
    ]


@pytest.fixture
def registry():
    return FeatureRegistry(make_definitions())


@pytest.fixture
def service(flag_db, registry):
    return FeatureFlagService(flag_db, registry)
