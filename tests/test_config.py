"""Tests for ConsumerConfig validation and runtime updates."""

import pytest
from hypothesis import given
from hypothesis import strategies as st
from pydantic import ValidationError

from leasekeeper.core.config import (
    MAX_BATCH_SIZE,
    UPDATABLE_OPTIONS,
    ConsumerConfig,
    HandlerMode,
    load_config,
)
from leasekeeper.core.errors import ConfigurationError
from leasekeeper.core.message import Message


def handler(message):
    return None


def config(**overrides) -> ConsumerConfig:
    options = {"queue_url": "orders", "handle_message": handler}
    options.update(overrides)
    return ConsumerConfig(**options)


# =============================================================================
# Defaults
# =============================================================================


class TestDefaults:
    """ConsumerConfig defaults."""

    def test_defaults(self):
        cfg = config()

        assert cfg.batch_size == 1
        assert cfg.concurrency is None
        assert cfg.concurrency_limit == 1
        assert cfg.visibility_timeout is None
        assert cfg.wait_time_seconds == 20
        assert cfg.heartbeat_interval is None
        assert cfg.polling_wait_time == 0
        assert cfg.authentication_error_timeout == 10
        assert cfg.handle_message_timeout is None
        assert cfg.always_acknowledge is False
        assert cfg.should_delete_messages is True
        assert cfg.terminate_visibility_timeout is False
        assert cfg.attribute_names == []
        assert cfg.message_attribute_names == []
        assert cfg.drain_timeout == 0
        assert cfg.handler_mode is HandlerMode.SINGLE
        assert cfg.pre_receive_message_callback is None
        assert cfg.post_receive_message_callback is None
        assert cfg.extended_transport_errors is False

    def test_concurrency_limit_follows_batch_size(self):
        assert config(batch_size=7).concurrency_limit == 7
        assert config(batch_size=7, concurrency=20).concurrency_limit == 20

    def test_config_is_frozen(self):
        cfg = config()

        with pytest.raises(ValidationError):
            cfg.batch_size = 5

    def test_unknown_option_rejected(self):
        with pytest.raises(ValidationError):
            config(batchSize=5)

    def test_queue_url_is_stripped(self):
        assert config(queue_url="  orders  ").queue_url == "orders"


# =============================================================================
# Validation
# =============================================================================


class TestValidation:
    """Invalid combinations SHALL be rejected at construction."""

    def test_requires_a_handler(self):
        with pytest.raises(ValidationError) as exc_info:
            ConsumerConfig(queue_url="orders")

        assert "handle_message or handle_message_batch" in str(exc_info.value)

    @pytest.mark.parametrize("queue_url", ["", "   "])
    def test_rejects_empty_queue_url(self, queue_url):
        with pytest.raises(ValidationError):
            config(queue_url=queue_url)

    @given(st.integers(min_value=1, max_value=MAX_BATCH_SIZE))
    def test_accepts_batch_size_in_range(self, batch_size):
        assert config(batch_size=batch_size).batch_size == batch_size

    @given(
        st.one_of(
            st.integers(max_value=0),
            st.integers(min_value=MAX_BATCH_SIZE + 1),
        )
    )
    def test_rejects_batch_size_out_of_range(self, batch_size):
        with pytest.raises(ValidationError) as exc_info:
            config(batch_size=batch_size)

        assert "batch_size" in str(exc_info.value)

    @pytest.mark.parametrize("value", ["5", 2.5, True])
    def test_rejects_non_integer_batch_size(self, value):
        with pytest.raises(ValidationError):
            config(batch_size=value)

    @pytest.mark.parametrize("value", [0, -1, 1.5, "3"])
    def test_rejects_invalid_concurrency(self, value):
        with pytest.raises(ValidationError):
            config(concurrency=value)

    def test_rejects_concurrency_below_batch_size(self):
        with pytest.raises(ValidationError) as exc_info:
            config(batch_size=5, concurrency=3)

        assert "must not be smaller than batch_size" in str(exc_info.value)

    @pytest.mark.parametrize("wait", [-1, 21, 100])
    def test_rejects_wait_time_out_of_range(self, wait):
        with pytest.raises(ValidationError):
            config(wait_time_seconds=wait)

    def test_rejects_negative_polling_wait_time(self):
        with pytest.raises(ValidationError):
            config(polling_wait_time=-0.5)

    def test_heartbeat_requires_visibility_timeout(self):
        with pytest.raises(ValidationError) as exc_info:
            config(heartbeat_interval=5)

        assert "requires visibility_timeout" in str(exc_info.value)

    @pytest.mark.parametrize("interval", [30, 31, 60])
    def test_heartbeat_must_be_less_than_visibility_timeout(self, interval):
        with pytest.raises(ValidationError) as exc_info:
            config(visibility_timeout=30, heartbeat_interval=interval)

        assert "must be less than visibility_timeout" in str(exc_info.value)

    def test_accepts_heartbeat_below_visibility_timeout(self):
        cfg = config(visibility_timeout=30, heartbeat_interval=10)

        assert cfg.heartbeat_interval == 10

    def test_rejects_negative_terminate_visibility_timeout(self):
        with pytest.raises(ValidationError):
            config(terminate_visibility_timeout=-1)

    def test_both_handlers_selects_batch_mode(self):
        cfg = config(handle_message_batch=handler)

        assert cfg.has_both_handlers is True
        assert cfg.handler_mode is HandlerMode.BATCH


# =============================================================================
# Lease after failure
# =============================================================================


class TestLeaseAfterFailure:
    """terminate_visibility_timeout policies."""

    message = Message(id="m-1", receipt_handle="rh-1", receive_count=4)

    @pytest.mark.parametrize(
        "policy,expected",
        [
            (False, None),
            (True, 0),
            (0, 0),
            (15, 15),
            (lambda m: m.receive_count * 5, 20),
        ],
    )
    def test_policy(self, policy, expected):
        cfg = config(terminate_visibility_timeout=policy)

        assert cfg.lease_after_failure(self.message) == expected


# =============================================================================
# Updates
# =============================================================================


class TestApplyUpdate:
    """apply_update returns a new validated config."""

    def test_returns_new_config(self):
        cfg = config()
        updated = cfg.apply_update("batch_size", 4)

        assert updated is not cfg
        assert updated.batch_size == 4
        assert cfg.batch_size == 1

    def test_keeps_handlers(self):
        cfg = config(terminate_visibility_timeout=lambda m: 3)
        updated = cfg.apply_update("polling_wait_time", 2)

        assert updated.handle_message is handler
        assert updated.terminate_visibility_timeout is cfg.terminate_visibility_timeout

    @pytest.mark.parametrize("name", sorted(UPDATABLE_OPTIONS))
    def test_updatable_options_accepted(self, name):
        values = {
            "batch_size": 2,
            "concurrency": 4,
            "wait_time_seconds": 5,
            "polling_wait_time": 1,
            "visibility_timeout": 60,
        }

        updated = config().apply_update(name, values[name])

        assert getattr(updated, name) == values[name]

    def test_rejects_non_updatable_option(self):
        with pytest.raises(ConfigurationError) as exc_info:
            config().apply_update("handle_message", handler)

        assert "cannot be updated at runtime" in str(exc_info.value)

    def test_invalid_value_raises_configuration_error(self):
        with pytest.raises(ConfigurationError) as exc_info:
            config().apply_update("batch_size", 11)

        assert isinstance(exc_info.value.__cause__, ValidationError)

    @given(st.integers(min_value=1, max_value=MAX_BATCH_SIZE))
    def test_batch_size_update_respects_concurrency(self, batch_size):
        cfg = config(batch_size=1, concurrency=5)

        if batch_size <= 5:
            assert cfg.apply_update("batch_size", batch_size).batch_size == batch_size
        else:
            with pytest.raises(ConfigurationError):
                cfg.apply_update("batch_size", batch_size)


class TestLoadConfig:
    """load_config wraps validation failures."""

    def test_valid(self):
        cfg = load_config(queue_url="orders", handle_message=handler, batch_size=3)

        assert cfg.batch_size == 3

    def test_invalid(self):
        with pytest.raises(ConfigurationError):
            load_config(queue_url="orders")
