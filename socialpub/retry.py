"""
Backoff policies for transient publish failures.

A policy answers one question: after the Nth failed attempt, how many
seconds until the job is due again.
"""


class NoBackoff:
    """Retry on the next poll."""

    def delay(self, attempts):
        return 0


class FixedBackoff:

    def __init__(self, seconds):
        self.seconds = seconds

    def delay(self, attempts):
        return self.seconds


class ExponentialBackoff:
    """``base * 2**(attempts - 1)``, capped."""

    def __init__(self, base, cap):
        self.base = base
        self.cap = cap

    def delay(self, attempts):
        return min(self.cap, self.base * (2 ** max(attempts - 1, 0)))


def policy_from_config(config):
    name = config.retry_backoff
    if name == 'fixed':
        return FixedBackoff(config.retry_delay)
    if name == 'exponential':
        return ExponentialBackoff(config.retry_delay, config.retry_max_delay)
    if name == 'none':
        return NoBackoff()
    raise ValueError(f'Unknown RETRY_BACKOFF policy: {name}')
