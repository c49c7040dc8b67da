import secrets
import string

INVITE_CODE_LENGTH = 8
# Letters and digits minus the look-alikes 0/O, 1/I and l: 57 symbols.
INVITE_CODE_ALPHABET = "".join(
    ch for ch in string.ascii_uppercase + string.ascii_lowercase + string.digits if ch not in "0O1Il"
)


def generate_invite_code(length: int = INVITE_CODE_LENGTH) -> str:
    # No lookup against existing codes; the unique index on invites.code rejects a collision.
    return "".join(secrets.choice(INVITE_CODE_ALPHABET) for _ in range(length))
