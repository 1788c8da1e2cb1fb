import hmac
import secrets
from datetime import datetime, timedelta


class CodeGenerator:
    """
    Short numeric verification codes exchanged out-of-band between customer
    and provider (start code, completion code).
    """

    def __init__(self, length: int = 6, ttl_seconds: int = 24 * 60 * 60):
        if length < 1:
            raise ValueError("Code length must be at least 1")
        if ttl_seconds <= 0:
            raise ValueError("Code lifetime must be positive")
        self.length = length
        self.ttl = timedelta(seconds=ttl_seconds)

    def generate(self, exclude: str = None) -> str:
        """
        Random code of `length` digits with no leading zero.
        Never returns `exclude`, so a reissued code always replaces the old one.
        """
        low = 10 ** (self.length - 1)
        span = 9 * low
        if self.length == 1:
            low, span = 0, 10
        excluded = exclude.strip() if isinstance(exclude, str) else None
        while True:
            code = str(low + secrets.randbelow(span))
            if code != excluded:
                return code

    def expires_at(self, now: datetime) -> datetime:
        return now + self.ttl

    @staticmethod
    def validate(submitted, stored) -> bool:
        # exact match after trimming, compared in constant time
        if not isinstance(submitted, str) or not isinstance(stored, str):
            return False
        return hmac.compare_digest(submitted.strip().encode("utf-8"), stored.strip().encode("utf-8"))

    @staticmethod
    def is_expired(expires_at: datetime, now: datetime) -> bool:
        return expires_at < now
