import hmac
import secrets

def generate_order_token() -> str:
    """Unguessable token for the public delivery and review links"""
    return secrets.token_urlsafe(24)

def api_key_matches(received: str, expected: str) -> bool:
    if not received or not expected:
        return False
    return hmac.compare_digest(received.encode(), expected.encode())
