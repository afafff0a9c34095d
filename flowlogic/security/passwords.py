from pwdlib import PasswordHash

from flowlogic.errors import BadRequestError

MIN_PASSWORD_LENGTH = 8

password_hash = PasswordHash.recommended()


def hash_password(raw_password: str) -> str:
    return password_hash.hash(raw_password)


def verify_password(raw_password: str, hashed_password: str) -> bool:
    return password_hash.verify(raw_password, hashed_password)


def check_password_policy(raw_password: str) -> None:
    if len(raw_password) < MIN_PASSWORD_LENGTH:
        raise BadRequestError(
            'Validation failed',
            message=f'Password must be at least {MIN_PASSWORD_LENGTH} characters',
        )
