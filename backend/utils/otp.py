import secrets


def generate_otp(length: int = 6) -> str:
    """Return a uniformly sampled numeric code of ``length`` digits.

    Leading zeros are kept ("004821" is a valid code).
    """
    return f"{secrets.randbelow(10 ** length):0{length}d}"
