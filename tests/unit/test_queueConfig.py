"""
Unit tests for queue configuration: backoff, option merging and the
per-queue defaults built from settings.
"""

from datetime import timedelta

import pytest

from appointly.queues.queueConfig import (
    PRIORITY_PAYMENT,
    PRIORITY_REFUND,
    PRIORITY_ROUTINE,
    PRIORITY_URGENT,
    JobOptions,
    QueueName,
    build_queue_configs,
    compute_backoff_ms,
)


class TestBackoff:

    @pytest.mark.parametrize(
        "attempts, expected",
        [(0, 2000), (1, 4000), (2, 8000), (3, 16000)],
    )
    def test_doubles_per_attempt(self, attempts, expected):
        assert compute_backoff_ms(attempts, 2000) == expected

    def test_zero_base_means_no_delay(self):
        assert compute_backoff_ms(5, 0) == 0


class TestJobOptions:

    def test_defaults(self):
        opts = JobOptions()
        assert opts.attempts == 3
        assert opts.backoff_delay_ms == 2000
        assert opts.priority == PRIORITY_ROUTINE
        assert opts.delay_ms == 0

    def test_merged_applies_changes_without_mutating(self):
        base = JobOptions()
        merged = base.merged(priority=PRIORITY_URGENT, delay_ms=500)
        assert merged.priority == PRIORITY_URGENT
        assert merged.delay_ms == 500
        assert base.priority == PRIORITY_ROUTINE

    def test_merged_override_replaces_base(self):
        override = JobOptions(attempts=7)
        assert JobOptions().merged(override).attempts == 7
        assert JobOptions().merged(override, priority=5).priority == 5

    def test_merged_without_changes_returns_self(self):
        opts = JobOptions()
        assert opts.merged() is opts


class TestPriorities:

    def test_ordering(self):
        assert PRIORITY_URGENT > PRIORITY_ROUTINE
        assert PRIORITY_PAYMENT > PRIORITY_REFUND > PRIORITY_ROUTINE


class TestBuildQueueConfigs:

    def test_three_named_queues(self, test_settings):
        configs = build_queue_configs(test_settings)
        assert set(configs) == {q.value for q in QueueName}

    def test_bookings_defaults(self, test_settings):
        config = build_queue_configs(test_settings)["bookings"]
        assert config.concurrency == 5
        assert config.default_options.attempts == 3
        assert config.default_options.backoff_delay_ms == 3000
        assert (config.keep_completed, config.keep_failed) == (30, 15)

    def test_notifications_defaults(self, test_settings):
        config = build_queue_configs(test_settings)["notifications"]
        assert config.concurrency == 10
        assert config.default_options.attempts == 3
        assert config.default_options.backoff_delay_ms == 2000
        assert (config.keep_completed, config.keep_failed) == (100, 50)

    def test_payments_defaults(self, test_settings):
        config = build_queue_configs(test_settings)["payments"]
        assert config.concurrency == 3
        assert config.default_options.attempts == 5
        assert config.default_options.backoff_delay_ms == 10000
        assert (config.keep_completed, config.keep_failed) == (20, 10)

    def test_shared_settings_flow_into_every_queue(self, test_settings):
        settings = test_settings.model_copy(update={"queue_retention_hours": 6, "queue_lease_seconds": 30})
        for config in build_queue_configs(settings).values():
            assert config.retention == timedelta(hours=6)
            assert config.lease == timedelta(seconds=30)
