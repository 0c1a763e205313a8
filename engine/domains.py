import re
from typing import Optional

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
DOMAIN_RE = re.compile(r"^(?=.{3,253}$)([a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,63}$")

FREE_EMAIL_DOMAINS = frozenset({
    # Major providers
    "gmail.com", "googlemail.com", "yahoo.com", "hotmail.com", "outlook.com", "aol.com",
    "icloud.com", "me.com", "mac.com", "live.com", "msn.com", "yahoo.co.uk",
    # International providers
    "yandex.com", "yandex.ru", "mail.ru", "qq.com", "163.com", "126.com",
    "naver.com", "web.de", "gmx.de", "gmx.com", "orange.fr", "free.fr",
    "libero.it", "btinternet.com", "rediffmail.com",
    # Privacy-focused providers
    "protonmail.com", "proton.me", "tutanota.com", "fastmail.com", "hey.com",
    "zoho.com", "mail.com", "email.com",
})

DISPOSABLE_EMAIL_DOMAINS = frozenset({
    "10minutemail.com", "guerrillamail.com", "mailinator.com", "tempmail.org",
    "throwaway.email", "getnada.com", "maildrop.cc", "temp-mail.org",
    "yopmail.com", "sharklasers.com", "dispostable.com", "mytrashmail.com",
})


def normalize_email(email: Optional[str]) -> Optional[str]:
    """Lowercase and trim an email; returns None when it does not look like one."""
    if not email:
        return None
    cleaned = str(email).strip().lower()
    return cleaned if EMAIL_RE.match(cleaned) else None


def normalize_domain(domain: Optional[str]) -> Optional[str]:
    """Strip scheme, path, port and a leading www. from a domain or URL."""
    if not domain:
        return None
    cleaned = str(domain).strip().lower()
    cleaned = re.sub(r"^[a-z]+://", "", cleaned)
    cleaned = cleaned.split("/")[0].split("?")[0].split(":")[0]
    cleaned = re.sub(r"^www\.", "", cleaned).strip(".")
    return cleaned or None


def email_domain(email: Optional[str]) -> Optional[str]:
    if not email or "@" not in str(email):
        return None
    return normalize_domain(str(email).rsplit("@", 1)[1])


def is_valid_domain(domain: Optional[str]) -> bool:
    return bool(domain) and bool(DOMAIN_RE.match(domain))


def is_free_email_domain(domain: Optional[str]) -> bool:
    return bool(domain) and domain in FREE_EMAIL_DOMAINS


def is_disposable_domain(domain: Optional[str]) -> bool:
    return bool(domain) and domain in DISPOSABLE_EMAIL_DOMAINS


def company_domain(domain: Optional[str], email: Optional[str]) -> Optional[str]:
    """Best-effort business domain: the explicit domain, else a non-free email domain."""
    explicit = normalize_domain(domain)
    if explicit:
        return explicit
    derived = email_domain(email)
    if derived and not is_free_email_domain(derived):
        return derived
    return None


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    """Digits only, keeping the last ten for longer numbers (country code dropped)."""
    if not phone:
        return None
    digits = re.sub(r"\D", "", str(phone))
    if len(digits) < 7:
        return None
    return digits[-10:] if len(digits) > 10 else digits


def normalize_company(company: Optional[str]) -> Optional[str]:
    """Case-fold, strip punctuation and collapse whitespace."""
    if not company:
        return None
    cleaned = re.sub(r"[^\w\s]", "", str(company).casefold())
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    return cleaned or None
