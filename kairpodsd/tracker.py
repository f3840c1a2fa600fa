"""Real-time battery drain tracking and time-to-live estimation."""

from __future__ import annotations

import logging
import math
import sys
import time
from collections.abc import Callable, Iterable, Iterator

from kairpodsd.errors import AirPodsError
from kairpodsd.protocol import BatteryInfo, BatteryState, NoiseControlMap, NoiseControlMode
from kairpodsd.ringbuf import Ring
from kairpodsd.study import BatteryStudy

log = logging.getLogger(__name__)

BATTERY_HISTORY_SIZE = 32
MIN_SAMPLES_TO_SAVE = 3

_EPSILON = sys.float_info.epsilon
_U32_MAX = 2**32 - 1
_LOCAL_MIN_SAMPLES = 4
_LOCAL_MAX_AGE = 2.0 * 3600.0
_CACHE_DURATION = 300.0
_KEEP_COUNT = 5

# Reference point for sample timestamps, which are kept as whole seconds since it.
_BASE_TIME = time.monotonic()


def _seconds_since_base(timestamp: float) -> int:
    if timestamp <= _BASE_TIME:
        return 0
    return min(int(timestamp - _BASE_TIME), _U32_MAX)


def _as_u32(value: float) -> int:
    """Convert a float the way a saturating unsigned cast would."""
    if math.isnan(value) or value <= 0:
        return 0
    if value >= _U32_MAX:
        return _U32_MAX
    return int(value)


def _round_half_away(value: float) -> int:
    return _as_u32(math.floor(value + 0.5))


def calculate_slope(samples: Iterable[tuple[int, int]]) -> float | None:
    """Return the drain rate in percent per hour fitted to (seconds, level) samples.

    Returns None with fewer than two samples, when the fit is degenerate, or
    when the level is not falling.
    """
    points = list(samples)
    if len(points) < 2:
        return None

    n = float(len(points))
    sum_x = sum_y = sum_xy = sum_xx = 0.0
    base = points[0][0]
    for seconds, level in points:
        x = max(seconds - base, 0) / 3600.0
        y = float(level)
        sum_x += x
        sum_y += y
        sum_xy += x * y
        sum_xx += x * x

    denominator = n * sum_xx - sum_x * sum_x
    if abs(denominator) < _EPSILON:
        return None
    slope = (n * sum_xy - sum_x * sum_y) / denominator
    return -slope if slope < 0.0 else None


class BatteryHistory:
    """Recent battery levels of one bud, as (seconds since start, level) pairs."""

    def __init__(self) -> None:
        self._samples: Ring[tuple[int, int]] = Ring(BATTERY_HISTORY_SIZE)

    def push(self, timestamp: float, level: int) -> None:
        """Record ``level`` at monotonic time ``timestamp``."""
        self._samples.push((_seconds_since_base(timestamp), level))

    def __iter__(self) -> Iterator[tuple[int, int]]:
        return iter(self._samples)

    def __len__(self) -> int:
        return len(self._samples)

    def clear(self) -> None:
        self._samples.clear()

    def last_level(self) -> int | None:
        last = self._samples.last()
        return None if last is None else last[1]

    def oldest_timestamp(self) -> float | None:
        """Monotonic time of the oldest sample, or None when empty."""
        oldest = self._samples.get(0)
        return None if oldest is None else _BASE_TIME + oldest[0]

    def record_battery_drop(self, level: int, timestamp: float) -> None:
        """Record ``level`` if it is the first sample or lower than the last one."""
        last_level = self.last_level()
        if last_level is not None:
            if level >= last_level:
                return
            log.debug(
                "Battery dropped from %d to %d (sample #%d, elapsed: %.1fs)",
                last_level,
                level,
                len(self) + 1,
                timestamp - _BASE_TIME,
            )
        else:
            log.debug("Recording initial battery level: %d (first sample)", level)
        self.push(timestamp, level)

    def calculate_drain_rate(
        self, min_samples: int, max_age: float | None
    ) -> tuple[float, float] | None:
        """Return (rate in %/h, smoothing alpha) from samples no older than ``max_age``."""
        if len(self) < min_samples:
            return None
        samples = [
            (seconds, level)
            for seconds, level in self
            if max_age is None or _BASE_TIME + seconds >= max_age
        ]
        if len(samples) < min_samples:
            return None
        rate = calculate_slope(samples)
        if rate is None:
            return None
        alpha = 0.3 if len(samples) >= 10 else 0.1
        return rate, alpha

    def truncate_front(self, count: int) -> None:
        """Keep only the ``count`` most recent samples."""
        self._samples.truncate_front(count)

    def __repr__(self) -> str:
        return f"BatteryHistory({list(self)!r})"


class BatteryTracker:
    """Tracks battery drops during a session and estimates remaining time."""

    def __init__(
        self,
        study: BatteryStudy | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.left_history = BatteryHistory()
        self.right_history = BatteryHistory()
        self.study = study
        self._clock = clock
        self._last_ttl_estimate: int | None = None
        self._historical_cache: NoiseControlMap[tuple[float, float, float]] = NoiseControlMap()

    def init_session(self, address: str | bytes, device_name: str) -> None:
        """Count a new session for the device and make sure its study exists."""
        if self.study is None:
            log.debug("No battery study available for session initialization")
            return
        log.debug("Initializing battery study session for %s (%s)", address, device_name)
        try:
            self.study.increment_session_count(address)
        except (AirPodsError, ValueError) as exc:
            log.debug("Failed to increment session count: %s", exc)
        try:
            device_study = self.study.get_or_create_study(address, device_name)
        except (AirPodsError, ValueError) as exc:
            log.debug("Failed to get/create battery study: %s", exc)
        else:
            log.debug(
                "Battery study for %s: %d sessions, %d samples, %d modes tracked",
                address,
                device_study.total_sessions,
                device_study.total_samples,
                len(device_study.drain_rates),
            )

    def record_battery_drop(self, left: BatteryState, right: BatteryState) -> None:
        """Record the levels of both buds; a bud that starts charging loses its history."""
        now = self._clock()
        for name, state, history in (
            ("left", left, self.left_history),
            ("right", right, self.right_history),
        ):
            if not state.is_available():
                continue
            if state.is_charging():
                if history.last_level() is not None:
                    log.debug("%s bud started charging, clearing battery history", name)
                    history.clear()
            else:
                history.record_battery_drop(state.level, now)

    def _invalidate(self, reason: str, level: int = logging.DEBUG) -> None:
        if self._last_ttl_estimate is not None:
            log.log(level, "Battery TTL estimation unavailable: %s", reason)
            self._last_ttl_estimate = None

    def estimate_ttl(
        self,
        battery_info: BatteryInfo,
        noise_mode: NoiseControlMode | None,
        address: str | bytes,
    ) -> int | None:
        """Estimate minutes of battery left, or None when no sound estimate exists."""
        prev_estimate = self._last_ttl_estimate
        left, right = battery_info.split()

        if left.is_charging() or right.is_charging():
            self._invalidate("AirPods are charging")
            return None
        if not left.is_available() or not right.is_available():
            self._invalidate("One or both buds disconnected")
            return None

        local = self._calculate_local_drain_rate()
        if local is not None:
            local_rate: tuple[float, float] | None = (local[0], local[1])
            local_count = local[2]
        else:
            local_rate, local_count = None, 0

        modes = ([noise_mode] if noise_mode is not None else []) + list(NoiseControlMode)
        historical_rate = None
        used_mode = None
        for mode in modes:
            rate = self._get_historical_rate_cached(address, mode)
            if rate is not None:
                historical_rate, used_mode = rate, mode
                break

        log.debug(
            "Battery TTL calculation - local: %s (samples: %d), historical: %s, mode: %s (used: %s)",
            local_rate and local_rate[0],
            local_count,
            historical_rate and historical_rate[0],
            noise_mode,
            used_mode,
        )

        combined = self._combine_drain_rates(local_rate, historical_rate, local_count)
        if combined is None:
            self._invalidate("No drain rate available", logging.INFO)
            return None
        drain_rate, alpha = combined

        if drain_rate <= _EPSILON:
            self._invalidate("Drain rate is effectively zero")
            return None

        min_level = float(min(left.level, right.level))
        new_minutes = _as_u32(min_level / drain_rate * 60.0)

        if not 0 < new_minutes < 24 * 60:
            self._invalidate(f"Unreasonable estimate ({new_minutes} minutes)")
            return None

        if prev_estimate is not None:
            smoothed = _round_half_away(new_minutes * alpha + prev_estimate * (1.0 - alpha))
        else:
            log.info("Battery TTL estimation now available: %d minutes remaining", new_minutes)
            smoothed = new_minutes
        self._last_ttl_estimate = smoothed
        return smoothed

    def _calculate_local_drain_rate(self) -> tuple[float, float, int] | None:
        max_age = self._clock() - _LOCAL_MAX_AGE
        for history in (self.left_history, self.right_history):
            result = history.calculate_drain_rate(_LOCAL_MIN_SAMPLES, max_age)
            if result is not None:
                return result[0], result[1], len(history)
        return None

    def _get_historical_rate_cached(
        self, address: str | bytes, mode: NoiseControlMode
    ) -> tuple[float, float] | None:
        cached = self._historical_cache.get(mode)
        if cached is not None:
            rate, confidence, stamp = cached
            if self._clock() - stamp < _CACHE_DURATION:
                return rate, confidence

        if self.study is None:
            log.debug("No battery study available")
            return None
        try:
            found = self.study.get_drain_rate(address, mode)
        except (AirPodsError, ValueError) as exc:
            log.debug("Error getting historical drain rate: %s", exc)
            return None
        if found is None:
            log.debug("No historical drain rate found for %s mode %s", address, mode)
            return None
        rate, confidence = found
        log.debug(
            "Found historical drain rate for %s mode %s: %.1f%%/hr (confidence: ±%.1f)",
            address,
            mode,
            rate,
            confidence,
        )
        self._historical_cache.insert(mode, (rate, confidence, self._clock()))
        return rate, confidence

    @staticmethod
    def _combine_drain_rates(
        local_rate: tuple[float, float] | None,
        historical_rate: tuple[float, float] | None,
        local_sample_count: int,
    ) -> tuple[float, float] | None:
        if local_rate is not None and historical_rate is not None:
            local_r = local_rate[0]
            hist_r, hist_conf = historical_rate
            if local_sample_count < 4:
                local_weight = 0.0
            elif local_sample_count <= 10:
                local_weight = 0.7
            else:
                local_weight = 0.9

            if hist_conf < 1.0:
                weight = local_weight * 0.8
            elif hist_conf < 2.0:
                weight = local_weight
            else:
                weight = (1.0 - local_weight) * 0.5 + local_weight

            combined = local_r * weight + hist_r * (1.0 - weight)
            alpha = weight * 0.2 + 0.3
            log.debug(
                "Combined drain rate: %.1f%%/hr (local: %.1f%%/hr * %.0f%%, "
                "historical: %.1f%%/hr * %.0f%%)",
                combined,
                local_r,
                weight * 100.0,
                hist_r,
                (1.0 - weight) * 100.0,
            )
            return combined, alpha
        if local_rate is not None:
            log.debug("Using local drain rate only (no historical data)")
            return local_rate
        if historical_rate is not None:
            hist_r, hist_conf = historical_rate
            if hist_conf < 5.0:
                log.debug(
                    "Using historical drain rate: %.1f%%/hr (confidence: ±%.1f)", hist_r, hist_conf
                )
                return hist_r, 0.5
            log.debug(
                "Using historical drain rate with low confidence: %.1f%%/hr (±%.1f)",
                hist_r,
                hist_conf,
            )
            return hist_r, 0.7
        return None

    def should_save(self, interval_minutes: int, battery_info: BatteryInfo) -> bool:
        """Whether enough samples spanning ``interval_minutes`` warrant a save."""
        sample_count = max(len(self.left_history), len(self.right_history))
        if sample_count < MIN_SAMPLES_TO_SAVE:
            log.debug(
                "should_save: Not enough samples yet (have %d, need %d)",
                sample_count,
                MIN_SAMPLES_TO_SAVE,
            )
            return False

        left, right = battery_info.split()
        if left.is_charging() or right.is_charging():
            log.debug(
                "should_save: AirPods are charging (left: %s, right: %s)",
                left.is_charging(),
                right.is_charging(),
            )
            return False

        stamps = [
            t
            for t in (self.left_history.oldest_timestamp(), self.right_history.oldest_timestamp())
            if t is not None
        ]
        if not stamps:
            log.debug("should_save: No timestamp samples available")
            return False

        elapsed = max(self._clock() - min(stamps), 0.0)
        required = float(interval_minutes * 60)
        result = elapsed >= required
        log.debug(
            "should_save: Elapsed: %.1fs, Required: %.1fs, Will save: %s",
            elapsed,
            required,
            result,
        )
        return result

    def save_to_study(self, address: str | bytes, noise_mode: NoiseControlMode) -> None:
        """Store this session's drain rate in the study and trim the history."""
        if self.study is not None:
            local = self._calculate_local_drain_rate()
            if local is not None and local[2] >= 4:
                drain_rate, _alpha, sample_count = local
                try:
                    self.study.update_drain_rate(address, noise_mode, drain_rate, sample_count)
                except (AirPodsError, ValueError) as exc:
                    log.debug("Failed to update drain rate: %s", exc)
                log.info(
                    "Saved battery drain rate of %.1f%%/hr for mode %s with %d samples",
                    drain_rate,
                    noise_mode,
                    sample_count,
                )
                self._historical_cache.remove(noise_mode)
        self._trim_history()

    def _trim_history(self) -> None:
        for history in (self.left_history, self.right_history):
            if len(history) > _KEEP_COUNT:
                history.truncate_front(_KEEP_COUNT)