"""
Tests for flag resolution along the context hierarchy.

Overrides are seeded straight into a real temporary database so that every
combination of states can be set up regardless of transition rules.
"""

import pytest

from src.core.flags.cache import ResolutionCache
from src.core.flags.context import Context
from src.core.flags.definitions import FeatureDefinition, FeatureRegistry
from src.core.flags.exceptions import UnknownFeatureError
from src.core.flags.models import ContextKind, FlagRecord, FlagState
from src.core.flags.repository import FlagRepository
from src.core.flags.resolver import FlagResolver


# ===================================================================
# Fixtures
# ===================================================================

@pytest.fixture
def repo(flag_db):
    return FlagRepository(flag_db)


@pytest.fixture
def cache():
    return ResolutionCache()


@pytest.fixture
def resolver(registry, repo, cache):
    return FlagResolver(registry, repo, cache)


def _seed(repo, feature, context, state):
    return repo.insert(FlagRecord(
        feature=feature,
        context_type=context.context_type,
        context_id=context.id,
        state=state,
    ))


# ===================================================================
# Defaults
# ===================================================================

class TestDefaults:
    @pytest.mark.parametrize("feature,expected", [
        ("course_feature", FlagState.ALLOWED),
        ("course_default_on", FlagState.ON),
        ("course_default_off", FlagState.OFF),
    ])
    def test_no_records_yields_definition_default(self, resolver, tree, feature, expected):
        for context in (tree.root, tree.sub, tree.course):
            flag = resolver.resolve(feature, context)
            assert flag.state == expected
            assert flag.is_default
            assert flag.locked is False

    def test_default_has_no_context(self, resolver, tree):
        flag = resolver.resolve("course_feature", tree.course)
        assert flag.context_type is None
        assert flag.context_id is None

    def test_root_opt_in_is_off_at_root(self, resolver, tree):
        assert resolver.resolve("fancy_wickets", tree.root).state == FlagState.OFF

    def test_root_opt_in_allowed_below_root(self, resolver, tree):
        assert resolver.resolve("fancy_wickets", tree.sub).state == FlagState.ALLOWED
        assert resolver.resolve("fancy_wickets", tree.course).state == FlagState.ALLOWED

    def test_root_opt_in_ignores_terminal_default(self, flag_db, tree):
        registry = FeatureRegistry([
            FeatureDefinition(name="opt", applies_to=ContextKind.COURSE,
                              state=FlagState.ON, root_opt_in=True),
        ])
        resolver = FlagResolver(registry, FlagRepository(flag_db))
        assert resolver.resolve("opt", tree.root).state == FlagState.ON

    def test_root_opt_in_leaves_allowed_on_default(self, flag_db, tree):
        registry = FeatureRegistry([
            FeatureDefinition(name="opt", applies_to=ContextKind.COURSE,
                              state=FlagState.ALLOWED_ON, root_opt_in=True),
        ])
        resolver = FlagResolver(registry, FlagRepository(flag_db))
        assert resolver.resolve("opt", tree.root).state == FlagState.ALLOWED_ON


# ===================================================================
# Locking
# ===================================================================

class TestTerminalStates:
    @pytest.mark.parametrize("state", [FlagState.OFF, FlagState.ON])
    def test_terminal_at_root_locks_descendants(self, resolver, repo, tree, state):
        _seed(repo, "course_feature", tree.root, state)
        for context in (tree.sub, tree.course, tree.root_course):
            flag = resolver.resolve("course_feature", context)
            assert flag.state == state
            assert flag.locked is True
            assert flag.context_id == "1"

    @pytest.mark.parametrize("state", [FlagState.OFF, FlagState.ON])
    def test_terminal_not_locked_where_it_is_set(self, resolver, repo, tree, state):
        _seed(repo, "course_feature", tree.sub, state)
        flag = resolver.resolve("course_feature", tree.sub)
        assert flag.state == state
        assert flag.locked is False

    def test_ancestor_terminal_beats_descendant_terminal(self, resolver, repo, tree):
        _seed(repo, "course_feature", tree.root, FlagState.OFF)
        _seed(repo, "course_feature", tree.course, FlagState.ON)
        flag = resolver.resolve("course_feature", tree.course)
        assert flag.state == FlagState.OFF
        assert flag.locked is True

    def test_terminal_beats_descendant_allowed(self, resolver, repo, tree):
        _seed(repo, "course_feature", tree.root, FlagState.ON)
        _seed(repo, "course_feature", tree.sub, FlagState.ALLOWED)
        flag = resolver.resolve("course_feature", tree.sub)
        assert flag.state == FlagState.ON
        assert flag.locked is True

    def test_other_root_untouched(self, resolver, repo, tree):
        _seed(repo, "course_feature", tree.root, FlagState.OFF)
        flag = resolver.resolve("course_feature", tree.other_course)
        assert flag.state == FlagState.ALLOWED
        assert flag.is_default

    def test_sub_account_on_reaches_course(self, resolver, repo, tree):
        _seed(repo, "fancy_wickets", tree.sub, FlagState.ON)
        assert resolver.resolve("fancy_wickets", tree.root).state == FlagState.OFF
        assert resolver.resolve("fancy_wickets", tree.sub).locked is False
        flag = resolver.resolve("fancy_wickets", tree.course)
        assert flag.state == FlagState.ON
        assert flag.context_id == "2"
        assert flag.locked is True


class TestAllowedStates:
    def test_allowed_account_with_course_on(self, resolver, repo, tree):
        _seed(repo, "course_feature", tree.sub, FlagState.ALLOWED)
        _seed(repo, "course_feature", tree.course, FlagState.ON)
        flag = resolver.resolve("course_feature", tree.course)
        assert flag.state == FlagState.ON
        assert flag.locked is False

    def test_most_specific_allowed_wins(self, resolver, repo, tree):
        _seed(repo, "course_feature", tree.root, FlagState.ALLOWED)
        _seed(repo, "course_feature", tree.sub, FlagState.ALLOWED_ON)
        flag = resolver.resolve("course_feature", tree.course)
        assert flag.state == FlagState.ALLOWED_ON
        assert flag.context_id == "2"
        assert flag.locked is False
        assert flag.enabled

    def test_allowed_inherited_unlocked(self, resolver, repo, tree):
        _seed(repo, "course_feature", tree.root, FlagState.ALLOWED)
        flag = resolver.resolve("course_feature", tree.course)
        assert flag.state == FlagState.ALLOWED
        assert flag.locked is False
        assert not flag.enabled

    def test_record_beats_root_opt_in(self, resolver, repo, tree):
        _seed(repo, "fancy_wickets", tree.root, FlagState.ALLOWED)
        assert resolver.resolve("fancy_wickets", tree.root).state == FlagState.ALLOWED


# ===================================================================
# Visibility
# ===================================================================

class TestHiddenFeatures:
    def test_hidden_without_record_is_not_found(self, resolver, tree):
        assert resolver.resolve("secret_feature", tree.course) is None

    def test_override_hidden_shows_default(self, resolver, tree):
        flag = resolver.resolve("secret_feature", tree.course, override_hidden=True)
        assert flag.state == FlagState.ALLOWED
        assert flag.hidden is True
        assert flag.is_default

    def test_hidden_visible_once_surfaced(self, resolver, repo, tree):
        _seed(repo, "secret_feature", tree.root, FlagState.ALLOWED)
        flag = resolver.resolve("secret_feature", tree.course)
        assert flag is not None
        assert flag.hidden is False


class TestHideInheritedEnabled:
    def test_inherited_on_hidden(self, resolver, repo, tree):
        _seed(repo, "course_feature", tree.root, FlagState.ON)
        assert resolver.resolve("course_feature", tree.course, hide_inherited_enabled=True) is None

    def test_local_on_kept(self, resolver, repo, tree):
        _seed(repo, "course_feature", tree.course, FlagState.ON)
        flag = resolver.resolve("course_feature", tree.course, hide_inherited_enabled=True)
        assert flag.state == FlagState.ON

    def test_inherited_off_kept(self, resolver, repo, tree):
        _seed(repo, "course_feature", tree.root, FlagState.OFF)
        flag = resolver.resolve("course_feature", tree.course, hide_inherited_enabled=True)
        assert flag.state == FlagState.OFF

    def test_default_on_hidden(self, resolver, tree):
        assert resolver.resolve("course_default_on", tree.course, hide_inherited_enabled=True) is None


class TestApplicability:
    def test_unknown_feature_raises(self, resolver, tree):
        with pytest.raises(UnknownFeatureError):
            resolver.resolve("no_such_feature", tree.course)

    def test_inapplicable_context_is_not_found(self, resolver, tree):
        assert resolver.resolve("user_feature", tree.course) is None
        assert resolver.resolve("account_feature", tree.course) is None
        assert resolver.resolve("root_feature", tree.sub) is None

    def test_user_feature_ignores_account_records(self, resolver, repo, tree):
        _seed(repo, "user_feature", tree.root, FlagState.OFF)
        flag = resolver.resolve("user_feature", tree.user)
        assert flag.state == FlagState.ALLOWED
        assert flag.is_default

    def test_user_feature_own_record(self, resolver, repo, tree):
        _seed(repo, "user_feature", tree.user, FlagState.ON)
        flag = resolver.resolve("user_feature", tree.user)
        assert flag.state == FlagState.ON
        assert flag.locked is False

    def test_enabled_helper(self, resolver, repo, tree):
        assert resolver.enabled("course_default_on", tree.course)
        assert not resolver.enabled("course_feature", tree.course)
        assert not resolver.enabled("user_feature", tree.course)


# ===================================================================
# Caching
# ===================================================================

class TestResolverCache:
    def test_second_resolve_hits_cache(self, resolver, cache, tree):
        resolver.resolve("course_feature", tree.course)
        resolver.resolve("course_feature", tree.course)
        assert cache.stats.hits == 1

    def test_stale_until_invalidated(self, resolver, repo, cache, tree):
        assert resolver.resolve("course_feature", tree.course).state == FlagState.ALLOWED
        _seed(repo, "course_feature", tree.root, FlagState.OFF)
        # written behind the cache's back
        assert resolver.resolve("course_feature", tree.course).state == FlagState.ALLOWED
        cache.invalidate("course_feature")
        assert resolver.resolve("course_feature", tree.course).state == FlagState.OFF

    def test_skip_cache_reads_fresh(self, resolver, repo, tree):
        resolver.resolve("course_feature", tree.course)
        _seed(repo, "course_feature", tree.root, FlagState.OFF)
        flag = resolver.resolve("course_feature", tree.course, skip_cache=True)
        assert flag.state == FlagState.OFF

    def test_not_found_cached(self, resolver, cache, tree):
        assert resolver.resolve("secret_feature", tree.course) is None
        assert resolver.resolve("secret_feature", tree.course) is None
        assert cache.stats.hits == 1

    def test_options_cached_separately(self, resolver, tree):
        assert resolver.resolve("secret_feature", tree.course) is None
        assert resolver.resolve("secret_feature", tree.course, override_hidden=True) is not None

    def test_without_cache(self, registry, repo, tree):
        resolver = FlagResolver(registry, repo)
        assert resolver.cache is None
        _seed(repo, "course_feature", tree.root, FlagState.ON)
        assert resolver.resolve("course_feature", tree.course).state == FlagState.ON

    def test_moved_course_sees_new_parent(self, resolver, repo, tree):
        _seed(repo, "course_feature", tree.sub, FlagState.OFF)
        assert resolver.resolve("course_feature", tree.course).state == FlagState.OFF

        moved = Context.course(tree.course.id, tree.root)
        flag = resolver.resolve("course_feature", moved)
        assert flag.state == FlagState.ALLOWED
        assert flag.locked is False

    def test_cache_bounded_across_many_contexts(self, registry, repo, tree):
        cache = ResolutionCache(max_entries=50)
        resolver = FlagResolver(registry, repo, cache)
        for i in range(500):
            resolver.resolve("course_feature", Context.course(str(1000 + i), tree.sub))
        stats = cache.stats
        assert stats.total_entries == 50
        assert stats.misses == 500
        assert stats.evictions == 450
