import random


def get_backoff_delay(
    attempt: int,
    base: float = 0.5,
    max_seconds: float = 10.0,
    jitter: float = 0.2,
) -> float:
    """
    Returns an exponential backoff delay in seconds for the given attempt.

    Parameters:
    - attempt (int): The number of consecutive failed attempts, starting at 0.
    - base (float): The delay for the first retry.
    - max_seconds (float): The maximum delay before jitter.
    - jitter (float): Random jitter as a fraction (e.g., 0.2 = ±20%) so that
      workers backing off together do not retry in lockstep.

    Returns:
    - float: The delay in seconds.
    """
    if attempt < 0:
        raise ValueError(f"attempt must be >= 0, got {attempt}")

    # Cap the exponent, 2**attempt overflows float for long outages
    delay = min(base * (2 ** min(attempt, 32)), max_seconds)
    return delay * random.uniform(1 - jitter, 1 + jitter)
