"""Shared exception hierarchy for raffle services."""


class RaffleError(Exception):
    """Base exception for the raffle engine."""


# ── Configuration (fatal, never retried) ──────────────────────────────────────


class ConfigurationError(RaffleError):
    """Strategy, rule or graph configuration is unusable."""


class MalformedRuleValueError(ConfigurationError):
    """A rule value does not follow its grammar."""


class UnknownRuleModelError(ConfigurationError):
    """A rule model or graph node kind has no registered implementation."""


class EmptyPrizePoolError(ConfigurationError):
    """No prize with a positive rate to build a lookup table from."""


class GraphNoPathError(ConfigurationError):
    """A node outcome matched none of its outgoing edges."""


class GraphCycleError(ConfigurationError):
    """A decision graph is not acyclic."""


class UnsupportedComparatorError(ConfigurationError):
    """An edge uses a comparator other than EQUAL."""


# ── Capacity (expected business outcomes) ─────────────────────────────────────


class CapacityExhaustedError(RaffleError):
    """Base exception for quota or campaign capacity denials."""


class QuotaExhaustedError(CapacityExhaustedError):
    """The account-quota gate refused the draw."""


class CampaignEndedError(CapacityExhaustedError):
    """The strategy's campaign end time has passed."""


# ── Transient infrastructure (retryable) ──────────────────────────────────────


class TransientInfraError(RaffleError):
    """Cache or durable store failure; safe to retry."""


class CacheUnavailableError(TransientInfraError):
    """The cache backend failed to answer."""


class StrategyNotArmedError(TransientInfraError):
    """No lookup table for the strategy; run armory first."""


# ── Submission ────────────────────────────────────────────────────────────────


class DuplicateSubmissionError(RaffleError):
    """The (user, order) pair was already recorded."""


class ServiceDegradedError(RaffleError):
    """Draws are switched off by the degrade switch."""
