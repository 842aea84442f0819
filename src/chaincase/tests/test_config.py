"""Tests for RunnableConfig, config helpers, bindings and settings."""

from __future__ import annotations

import time
from uuid import uuid4

import pytest
from pydantic import ValidationError

from chaincase import (
    CallbackHandler,
    CancelToken,
    CompositionError,
    RunCollector,
    RunnableBinding,
    RunnableConfig,
    RunnableLambda,
    ensure_config,
    get_config_list,
    get_settings,
    merge_configs,
    patch_config,
    with_timeout,
)
from chaincase.foundation.core import child_config
from chaincase.foundation.testing import FakeRunnable


# ─────────────────────────────────────────────────────────────────────────────
# RunnableConfig
# ─────────────────────────────────────────────────────────────────────────────


class TestRunnableConfig:

    def test_defaults(self) -> None:
        cfg = RunnableConfig()
        assert cfg.tags == () and cfg.callbacks == () and cfg.metadata == {}
        assert cfg.max_concurrency is None and cfg.cancel_token is None
        assert not cfg.is_cancelled

    def test_tags_deduplicated_in_order(self) -> None:
        assert RunnableConfig(tags=["a", "b", "a"]).tags == ("a", "b")
        assert RunnableConfig(tags="solo").tags == ("solo",)

    def test_single_callback_accepted(self) -> None:
        handler = CallbackHandler()
        assert RunnableConfig(callbacks=handler).callbacks == (handler,)

    def test_frozen(self) -> None:
        cfg = RunnableConfig()
        with pytest.raises(ValidationError):
            cfg.tags = ("x",)  # type: ignore[misc]

    def test_is_cancelled(self) -> None:
        token = CancelToken()
        cfg = RunnableConfig(cancel_token=token)
        token.cancel()
        assert cfg.is_cancelled

    def test_ensure_config(self) -> None:
        assert ensure_config(None) == RunnableConfig()
        assert ensure_config({"max_concurrency": 3}).max_concurrency == 3
        cfg = RunnableConfig(run_name="x")
        assert ensure_config(cfg) is cfg

    def test_ensure_config_rejects_unknown_keys(self) -> None:
        with pytest.raises(CompositionError):
            ensure_config({"max_concurency": 3})
        with pytest.raises(CompositionError):
            ensure_config({"max_concurrency": 0})


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────


class TestMergeAndPatch:

    def test_merge_tags_metadata_callbacks(self) -> None:
        a, b = RunCollector(), RunCollector()
        merged = merge_configs(
            {"tags": ["x", "y"], "metadata": {"k": 1, "keep": True}, "callbacks": [a]},
            RunnableConfig(tags=("y", "z"), metadata={"k": 2}, callbacks=(a, b)),
        )
        assert merged.tags == ("x", "y", "z")
        assert merged.metadata == {"k": 2, "keep": True}
        assert merged.callbacks == (a, b)

    def test_merge_scalars_later_wins_when_set(self) -> None:
        merged = merge_configs(
            RunnableConfig(max_concurrency=2, run_name="bound"),
            RunnableConfig(run_name="call"),
            None,
        )
        assert merged.max_concurrency == 2
        assert merged.run_name == "call"

    def test_patch_adds_tags_and_replaces_fields(self) -> None:
        cfg = RunnableConfig(tags=("a",), metadata={"m": 1}, max_concurrency=4)
        patched = patch_config(cfg, tags=("b",), metadata={"n": 2}, max_concurrency=1)

        assert patched.tags == ("a", "b")
        assert patched.metadata == {"m": 1, "n": 2}
        assert patched.max_concurrency == 1
        assert cfg.tags == ("a",)

    def test_patch_without_changes_returns_same(self) -> None:
        cfg = RunnableConfig(tags=("a",))
        assert patch_config(cfg) is cfg

    def test_child_config(self) -> None:
        parent_id = uuid4()
        cfg = RunnableConfig(run_id=uuid4(), run_name="root", tags=("t",))
        child = child_config(cfg, parent_id, "seq:step:1")

        assert child.run_id is None and child.run_name is None
        assert child.parent_run_id == parent_id
        assert child.tags == ("t", "seq:step:1")


class TestConfigList:

    def test_single_config_shared(self) -> None:
        cfg = RunnableConfig(tags=("t",))
        assert get_config_list(cfg, 3) == [cfg, cfg, cfg]

    def test_run_id_only_on_first_item(self) -> None:
        run_id = uuid4()
        configs = get_config_list({"run_id": run_id}, 3)
        assert [c.run_id for c in configs] == [run_id, None, None]

    def test_list_length_must_match(self) -> None:
        with pytest.raises(CompositionError):
            get_config_list([RunnableConfig()], 2)
        assert len(get_config_list([{}, {"tags": ["b"]}], 2)) == 2


class TestTimeout:

    def test_with_timeout_sets_deadline(self) -> None:
        before = time.monotonic()
        cfg = with_timeout(None, 10.0)
        assert cfg.deadline is not None
        assert before + 9.0 < cfg.deadline <= time.monotonic() + 10.0

    def test_earliest_deadline_wins(self) -> None:
        soon = time.monotonic() + 1.0
        assert with_timeout({"deadline": soon}, 100.0).deadline == soon


# ─────────────────────────────────────────────────────────────────────────────
# Bindings
# ─────────────────────────────────────────────────────────────────────────────


class TestBinding:

    @pytest.mark.asyncio
    async def test_bound_kwargs_passed_and_overridable(self) -> None:
        fake = FakeRunnable()
        bound = fake.bind(stop="\n", temperature=0.2)

        await bound.ainvoke("q")
        fake.assert_called_with("q", stop="\n", temperature=0.2)

        await bound.ainvoke("q", temperature=0.9)
        fake.assert_called_with("q", stop="\n", temperature=0.9)

    def test_binding_of_binding_collapses(self) -> None:
        fake = FakeRunnable(name="model")
        bound = fake.bind(a=1).with_config(tags=["x"]).bind(b=2)

        assert isinstance(bound, RunnableBinding)
        assert bound.bound is fake
        assert bound.kwargs == {"a": 1, "b": 2}
        assert bound.config.tags == ("x",)
        assert bound.get_name() == "model"

    @pytest.mark.asyncio
    async def test_with_config_merges_under_call_config(self) -> None:
        fake = FakeRunnable()
        bound = fake.with_config({"tags": ["bound"], "metadata": {"who": "bound"}}, max_concurrency=2)

        await bound.ainvoke("q", {"tags": ["call"], "metadata": {"who": "call"}})

        assert fake.last_call is not None
        cfg = fake.last_call.config
        assert "bound" in cfg.tags and "call" in cfg.tags
        assert cfg.metadata["who"] == "call"
        assert cfg.max_concurrency == 2

    @pytest.mark.asyncio
    async def test_binding_opens_no_run_of_its_own(self) -> None:
        collector = RunCollector()
        bound = RunnableLambda(lambda x: x, name="inner").with_config(run_name="renamed")
        await bound.ainvoke(1, {"callbacks": [collector]})
        assert collector.names == ["renamed"]

    @pytest.mark.asyncio
    async def test_bound_kwargs_in_batch_and_stream(self) -> None:
        fake = FakeRunnable()
        bound = fake.bind(mode="fast")

        await bound.abatch([1, 2])
        assert all(inv.kwargs == {"mode": "fast"} for inv in fake.invocations)

        assert [c async for c in bound.astream(3)] == [3]
        fake.assert_called_with(3, mode="fast")


# ─────────────────────────────────────────────────────────────────────────────
# Settings
# ─────────────────────────────────────────────────────────────────────────────


class TestSettings:

    def test_defaults(self) -> None:
        settings = get_settings()
        assert settings.batch.max_concurrency is None
        assert settings.logging.level == "INFO"
        assert settings.retry.max_attempts == 3

    def test_env_overrides(self, monkeypatch: pytest.MonkeyPatch) -> None:
        from chaincase import clear_settings_cache

        monkeypatch.setenv("CHAINCASE_BATCH_MAX_CONCURRENCY", "8")
        monkeypatch.setenv("CHAINCASE_LOG_LEVEL", "debug")
        clear_settings_cache()

        settings = get_settings()
        assert settings.batch.max_concurrency == 8
        assert settings.logging.level == "DEBUG"

    def test_cached(self) -> None:
        assert get_settings() is get_settings()
