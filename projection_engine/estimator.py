"""
State estimation from training history.

Runs a deterministic predict/update filter once per evidence day:
- Load derivation: each activity's load comes from TSS, power, pace, heart
  rate or duration (best source first), each with its own evidence quality
- Update: the day's observed load is fused with the habitual load (current
  CTL) by a Kalman gain that grows with evidence quality
- Predict: the fused load drives the same transition the projection engine
  uses; CTL/ATL variances propagate through the EWMA coefficients
- Effort signals: perceived readiness updates readiness_latent directly

Every day up to as_of is covered by the evidence. Days between the first and
last record without an activity are rest days; days after the last record are
idle days, observed as zero load at a lower quality, so CTL decays while its
variance grows toward the configured ceilings. Replay never reaches back more
than the max_history_days rail; older records are ignored.
"""

import math
from datetime import date, timedelta
from typing import Dict, List, Optional, Tuple

from loguru import logger

from projection_engine.calibration import CalibrationConfig
from projection_engine.errors import ProjectionInputError
from projection_engine.projection import DayState, advance_state
from projection_engine.safety import ABSOLUTE_RAILS
from projection_engine.schemas import (
    ActivityRecord,
    EffortSignal,
    EvidenceBundle,
    EvidenceState,
    LatentState,
    LoadSource,
    ProfileMetrics,
    StateSnapshot,
    VariableEstimate,
)


class DailyObservation:
    """Aggregated load evidence for one calendar day."""

    __slots__ = ("load", "quality", "sources")

    def __init__(self):
        self.load = 0.0
        self.quality = 0.0
        self.sources: List[LoadSource] = []


def _latest_threshold(
    signals: List[EffortSignal], field: str, day: date, profile: ProfileMetrics
) -> Optional[float]:
    """Most recent threshold on or before day, falling back to profile metrics."""
    for signal in reversed(signals):
        if signal.signal_date <= day and getattr(signal, field) is not None:
            return getattr(signal, field)
    return getattr(profile, field)


def derive_load(
    activity: ActivityRecord,
    signals: List[EffortSignal],
    profile: ProfileMetrics,
    calibration: CalibrationConfig,
) -> Tuple[float, float, LoadSource]:
    """
    Derive load for one activity.

    Args:
        activity: Normalized activity record
        signals: Effort signals sorted by date
        profile: Standing profile thresholds
        calibration: Active calibration

    Returns:
        Tuple of (load, evidence quality, source)
    """
    quality = calibration.estimator
    hours = activity.duration_s / 3600.0

    if activity.tss is not None:
        return activity.tss, quality.tss_quality, LoadSource.TSS

    ftp = _latest_threshold(signals, "ftp_watts", activity.activity_date, profile)
    if activity.normalized_power is not None and ftp:
        intensity = activity.normalized_power / ftp
        return intensity * intensity * hours * 100.0, quality.power_quality, LoadSource.POWER

    threshold_pace = _latest_threshold(signals, "threshold_pace_s_per_km", activity.activity_date, profile)
    if activity.avg_pace_s_per_km is not None and threshold_pace:
        intensity = threshold_pace / activity.avg_pace_s_per_km
        return intensity * intensity * hours * 100.0, quality.pace_quality, LoadSource.PACE

    threshold_hr = _latest_threshold(signals, "threshold_hr", activity.activity_date, profile)
    if activity.avg_hr is not None and threshold_hr:
        intensity = activity.avg_hr / threshold_hr
        return intensity * intensity * hours * 100.0, quality.heart_rate_quality, LoadSource.HEART_RATE

    intensity = calibration.no_history.default_intensity_factor
    return intensity * intensity * hours * 100.0, quality.duration_quality, LoadSource.DURATION


def _bounded_std(variance: float, floor: float, ceiling: float) -> float:
    """Standard deviation clamped to [floor, ceiling]; degenerate variance maps to the floor."""
    if math.isnan(variance) or variance <= 0.0:
        return floor
    if math.isinf(variance):
        return ceiling
    return max(floor, min(ceiling, math.sqrt(variance)))


class StateEstimator:
    """
    Infers latent athlete state and its uncertainty from evidence.

    Pure: the same evidence, prior snapshot and calibration always produce
    the same snapshot.
    """

    def __init__(self, calibration: CalibrationConfig):
        """
        Initialize estimator.

        Args:
            calibration: Active calibration (read-only)
        """
        self.calibration = calibration

    def aggregate(self, evidence: EvidenceBundle) -> Dict[date, DailyObservation]:
        """Sum derived loads per day with a load-weighted quality."""
        signals = sorted(evidence.effort_signals, key=lambda s: s.signal_date)
        activities = sorted(
            evidence.activities,
            key=lambda a: (a.activity_date, a.duration_s, a.tss if a.tss is not None else -1.0),
        )
        daily: Dict[date, DailyObservation] = {}
        weighted_quality: Dict[date, float] = {}
        qualities: Dict[date, List[float]] = {}

        for activity in activities:
            load, quality, source = derive_load(activity, signals, evidence.profile, self.calibration)
            day = activity.activity_date
            observation = daily.setdefault(day, DailyObservation())
            observation.load += load
            observation.sources.append(source)
            weighted_quality[day] = weighted_quality.get(day, 0.0) + load * quality
            qualities.setdefault(day, []).append(quality)

        for day, observation in daily.items():
            if observation.load > 0:
                observation.quality = weighted_quality[day] / observation.load
            else:
                observation.quality = sum(qualities[day]) / len(qualities[day])
        return daily

    def _perceived_readiness(self, evidence: EvidenceBundle) -> Dict[date, float]:
        by_day: Dict[date, List[float]] = {}
        for signal in evidence.effort_signals:
            if signal.perceived_readiness is not None:
                by_day.setdefault(signal.signal_date, []).append(signal.perceived_readiness / 100.0)
        return {day: sum(values) / len(values) for day, values in by_day.items()}

    def estimate(
        self,
        evidence: EvidenceBundle,
        prior: Optional[StateSnapshot] = None,
    ) -> StateSnapshot:
        """
        Estimate the latent state as of evidence.as_of.

        Args:
            evidence: Activity, effort and profile evidence
            prior: Optional snapshot from a previous run

        Returns:
            StateSnapshot with mean, uncertainty and evidence quality per variable

        Raises:
            ProjectionInputError: If the prior snapshot is newer than the evidence
                or holds out-of-range means
        """
        cal = self.calibration
        est = cal.estimator
        earliest = evidence.as_of - timedelta(days=ABSOLUTE_RAILS.max_history_days - 1)
        observed = {day: obs for day, obs in self.aggregate(evidence).items() if day >= earliest}
        daily = observed
        perceived = self._perceived_readiness(evidence)
        if evidence.activities and min(a.activity_date for a in evidence.activities) < earliest:
            logger.warning(
                f"[ESTIMATOR] {evidence.athlete_id}: ignoring records before {earliest} "
                f"(history rail of {ABSOLUTE_RAILS.max_history_days} days)"
            )
        if prior is not None and prior.as_of < earliest:
            logger.warning(
                f"[ESTIMATOR] Prior snapshot from {prior.as_of} is older than the history rail, ignoring it"
            )
            prior = None

        if prior is not None:
            self._check_prior(prior, evidence)
            if prior.calibration_version != cal.version:
                logger.warning(
                    f"[ESTIMATOR] Prior snapshot calibration {prior.calibration_version} "
                    f"differs from active {cal.version}"
                )
            state, variances = self._seed_from_prior(prior)
            start_day = prior.as_of + timedelta(days=1)
            daily = {day: obs for day, obs in daily.items() if day >= start_day}
        elif daily:
            state, variances, start_day = self._seed_from_history(daily)
        else:
            state, variances = self._seed_no_history()
            start_day = evidence.as_of + timedelta(days=1)
            logger.info(f"[ESTIMATOR] No evidence for {evidence.athlete_id}, using no-history defaults")

        first_record = min(observed) if observed else None
        last_record = max(observed) if observed else None
        fitness_ref = cal.timeline.fitness_reference_ctl
        build_tsb = cal.timeline.build_tsb
        habitual_var = est.habitual_load_std ** 2

        day = start_day
        while day <= evidence.as_of:
            observation = daily.get(day)
            idle = False
            if observation is not None:
                z, quality = observation.load, observation.quality
            elif first_record is not None and first_record <= day <= last_record:
                z, quality = 0.0, est.rest_day_quality
            else:
                z, quality, idle = 0.0, est.idle_day_quality, True

            load_prior = state.ctl
            observation_var = est.observation_noise_std ** 2 / quality
            gain = habitual_var / (habitual_var + observation_var)
            load_hat = load_prior + gain * (z - load_prior)
            # Nothing was recorded on an idle day, so its load variance stays unreduced
            load_var = habitual_var if idle else (1.0 - gain) * habitual_var

            a_c, a_a = cal.ctl_alpha, cal.atl_alpha
            variances["ctl"] = (1 - a_c) ** 2 * variances["ctl"] + a_c ** 2 * load_var + est.ctl_process_noise
            variances["atl"] = (1 - a_a) ** 2 * variances["atl"] + a_a ** 2 * load_var + est.atl_process_noise
            variances["durability"] = variances["durability"] + est.durability_process_noise
            response = cal.transition.readiness_response
            variances["readiness_latent"] = (1 - response) ** 2 * variances["readiness_latent"] + est.readiness_process_noise
            self._clip_variances(variances)

            state = advance_state(
                state._replace(uncertainty=self._uncertainty(variances["ctl"])),
                max(0.0, load_hat),
                build_tsb,
                fitness_ref,
                cal,
                grow_uncertainty=False,
            )

            if day in perceived:
                r_var = variances["readiness_latent"]
                obs_var = est.effort_observation_std ** 2
                gain = r_var / (r_var + obs_var)
                readiness = state.readiness_latent + gain * (perceived[day] - state.readiness_latent)
                state = state._replace(readiness_latent=max(0.0, min(1.0, readiness)))
                variances["readiness_latent"] = (1.0 - gain) * r_var
                self._clip_variances(variances)

            day += timedelta(days=1)

        return self._build_snapshot(evidence, prior, observed, len(daily), state, variances)

    # ------------------------------------------------------------------
    # Seeding
    # ------------------------------------------------------------------

    def _check_prior(self, prior: StateSnapshot, evidence: EvidenceBundle) -> None:
        if prior.as_of > evidence.as_of:
            raise ProjectionInputError(
                f"Prior snapshot as_of {prior.as_of} is after evidence as_of {evidence.as_of}"
            )
        for name in ("ctl", "atl"):
            if prior.variables[name].mean < 0:
                raise ProjectionInputError(f"Prior snapshot {name} mean is negative")
        for name in ("durability", "readiness_latent"):
            mean = prior.variables[name].mean
            if not 0.0 <= mean <= 1.0:
                raise ProjectionInputError(f"Prior snapshot {name} mean {mean} outside [0, 1]")

    def _seed_from_prior(self, prior: StateSnapshot) -> Tuple[DayState, Dict[str, float]]:
        v = prior.variables
        variances = {name: v[name].uncertainty ** 2 for name in v}
        self._clip_variances(variances)
        state = DayState(
            v["ctl"].mean,
            v["atl"].mean,
            v["durability"].mean,
            v["readiness_latent"].mean,
            self._uncertainty(variances["ctl"]),
        )
        return state, variances

    def _seed_from_history(
        self, daily: Dict[date, DailyObservation]
    ) -> Tuple[DayState, Dict[str, float], date]:
        """Warm start at the mean daily load of the whole history."""
        nh = self.calibration.no_history
        first, last = min(daily), max(daily)
        span_days = (last - first).days + 1
        mean_load = sum(obs.load for obs in daily.values()) / span_days
        variances = {
            "ctl": nh.default_ctl_std ** 2,
            "atl": nh.default_atl_std ** 2,
            "durability": self.calibration.estimator.durability_std_ceiling ** 2 / 4.0,
            "readiness_latent": self.calibration.estimator.readiness_std_ceiling ** 2 / 4.0,
        }
        state = DayState(
            mean_load,
            mean_load,
            nh.default_durability,
            nh.default_readiness_latent,
            self._uncertainty(variances["ctl"]),
        )
        logger.debug(f"[ESTIMATOR] Bootstrapping from {span_days} days of history, mean load {mean_load:.1f}")
        return state, variances, first

    def _seed_no_history(self) -> Tuple[DayState, Dict[str, float]]:
        nh = self.calibration.no_history
        variances = {
            "ctl": nh.default_ctl_std ** 2,
            "atl": nh.default_atl_std ** 2,
            "durability": self.calibration.estimator.durability_std_ceiling ** 2 / 4.0,
            "readiness_latent": self.calibration.estimator.readiness_std_ceiling ** 2 / 4.0,
        }
        state = DayState(
            nh.default_ctl,
            nh.default_atl,
            nh.default_durability,
            nh.default_readiness_latent,
            self._uncertainty(variances["ctl"]),
        )
        return state, variances

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _std_bounds(self) -> Dict[str, Tuple[float, float]]:
        est = self.calibration.estimator
        return {
            "ctl": (est.ctl_std_floor, est.ctl_std_ceiling),
            "atl": (est.atl_std_floor, est.atl_std_ceiling),
            "durability": (est.durability_std_floor, est.durability_std_ceiling),
            "readiness_latent": (est.readiness_std_floor, est.readiness_std_ceiling),
        }

    def _clip_variances(self, variances: Dict[str, float]) -> None:
        for name, (floor, ceiling) in self._std_bounds().items():
            variances[name] = _bounded_std(variances[name], floor, ceiling) ** 2

    def _uncertainty(self, ctl_variance: float) -> float:
        est = self.calibration.estimator
        std = _bounded_std(ctl_variance, est.ctl_std_floor, est.ctl_std_ceiling)
        return max(0.0, min(1.0, std / est.ctl_std_reference))

    def _build_snapshot(
        self,
        evidence: EvidenceBundle,
        prior: Optional[StateSnapshot],
        observed: Dict[date, DailyObservation],
        replayed_days: int,
        state: DayState,
        variances: Dict[str, float],
    ) -> StateSnapshot:
        cal = self.calibration
        est = cal.estimator
        as_of = evidence.as_of

        window_start = as_of - timedelta(days=est.quality_window_days - 1)
        window_days = [d for d in observed if d >= window_start]
        window_quality = sum(observed[d].quality for d in window_days) / est.quality_window_days

        quality = window_quality
        if prior is not None:
            gap = (as_of - prior.as_of).days
            quality = max(quality, prior.evidence_quality * 0.5 ** (gap / est.stale_after_days))
        quality = max(cal.no_history.evidence_quality_floor, min(1.0, quality))

        last_observed: Optional[date] = max(observed) if observed else None
        if last_observed is None and prior is not None and prior.evidence_state != EvidenceState.NONE:
            last_observed = prior.as_of

        if last_observed is None:
            evidence_state = EvidenceState.NONE
        elif (as_of - last_observed).days > est.stale_after_days:
            evidence_state = EvidenceState.STALE
        elif len(window_days) < est.sparse_min_days:
            evidence_state = EvidenceState.SPARSE
        else:
            evidence_state = EvidenceState.RICH

        week_start = as_of - timedelta(days=6)
        last_week_load = sum(obs.load for d, obs in observed.items() if d >= week_start)
        # Days before the prior that this evidence no longer carries
        if prior is not None and not any(d <= prior.as_of for d in observed):
            overlap_days = max(0, 7 - (as_of - prior.as_of).days)
            last_week_load += prior.last_week_load * overlap_days / 7.0

        evidence_days = replayed_days + (prior.evidence_days if prior is not None else 0)

        means = {
            "ctl": max(0.0, state.ctl),
            "atl": max(0.0, state.atl),
            "durability": max(0.0, min(1.0, state.durability)),
            "readiness_latent": max(0.0, min(1.0, state.readiness_latent)),
        }
        variables = {}
        for name, (floor, ceiling) in self._std_bounds().items():
            std = _bounded_std(variances[name], floor, ceiling)
            variables[name] = VariableEstimate(
                mean=means[name],
                uncertainty=std,
                evidence_quality=max(0.0, min(1.0, quality * (1.0 - std / ceiling))),
                as_of=as_of,
            )

        logger.info(
            f"[ESTIMATOR] {evidence.athlete_id} as of {as_of}: CTL {means['ctl']:.1f}"
            f"±{variables['ctl'].uncertainty:.1f}, ATL {means['atl']:.1f}, "
            f"evidence {evidence_state.value} ({quality:.2f})"
        )

        return StateSnapshot(
            athlete_id=evidence.athlete_id,
            as_of=as_of,
            calibration_version=cal.version,
            variables=variables,
            evidence_quality=quality,
            evidence_state=evidence_state,
            evidence_days=evidence_days,
            last_week_load=last_week_load,
        )


def to_latent_state(snapshot: StateSnapshot, calibration: CalibrationConfig) -> LatentState:
    """
    Seed state for the projection engine.

    Args:
        snapshot: Estimated (or persisted) snapshot
        calibration: Active calibration

    Returns:
        LatentState with uncertainty normalized from the CTL standard deviation
    """
    est = calibration.estimator
    v = snapshot.variables
    return LatentState(
        ctl=v["ctl"].mean,
        atl=v["atl"].mean,
        durability=v["durability"].mean,
        readiness_latent=v["readiness_latent"].mean,
        uncertainty=max(0.0, min(1.0, v["ctl"].uncertainty / est.ctl_std_reference)),
    )
