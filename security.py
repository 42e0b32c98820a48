import logging
import warnings

# ── Fix passlib + bcrypt >= 4.0 incompatibility ───────────────────────────────
# bcrypt 4.x removed __about__, which passlib tries to read → AttributeError → 500
try:
    import bcrypt as _bcrypt
    if not hasattr(_bcrypt, '__about__'):
        import types as _types
        _about = _types.ModuleType('bcrypt.__about__')
        _about.__version__ = getattr(_bcrypt, '__version__', '4.0.0')
        _bcrypt.__about__ = _about
except ImportError:
    pass

warnings.filterwarnings("ignore", ".*error reading bcrypt version.*")

from passlib.context import CryptContext

from errors import InvalidInputError

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=12)

MIN_SHARE_PASSWORD_LENGTH = 6
MAX_SHARE_PASSWORD_LENGTH = 128


def hash_password(password: str) -> str:
    """Hash a share access password with bcrypt."""
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    """Verify plain password against bcrypt hash. Never raises — returns False on error."""
    if not password or not hashed:
        return False
    try:
        return pwd_context.verify(password, hashed)
    except (ValueError, TypeError) as e:
        logger.warning(f"bcrypt verification error: {type(e).__name__}")
        return False


def validate_share_password(password: str) -> str:
    """Return the normalised password or raise InvalidInputError."""
    password = (password or "").strip()
    if len(password) < MIN_SHARE_PASSWORD_LENGTH:
        raise InvalidInputError(
            f"Password must be at least {MIN_SHARE_PASSWORD_LENGTH} characters long"
        )
    if len(password) > MAX_SHARE_PASSWORD_LENGTH:
        raise InvalidInputError(
            f"Password must be less than {MAX_SHARE_PASSWORD_LENGTH} characters long"
        )
    return password
