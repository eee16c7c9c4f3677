from argon2 import PasswordHasher, Type

from storegate.service.passwords import CredentialHasher


def test_hash_is_salted_argon2id():
    hasher = CredentialHasher()
    first = hasher.hash("UserPassword123!")
    second = hasher.hash("UserPassword123!")
    assert first != second
    assert first.startswith("$argon2id$")
    assert hasher.verify("UserPassword123!", first)
    assert hasher.verify("UserPassword123!", second)


def test_verify_rejects_wrong_password():
    hasher = CredentialHasher()
    digest = hasher.hash("UserPassword123!")
    assert not hasher.verify("WrongPassword!", digest)


def test_verify_returns_false_for_unusable_digests():
    hasher = CredentialHasher()
    assert not hasher.verify("UserPassword123!", None)
    assert not hasher.verify("UserPassword123!", "")
    assert not hasher.verify("UserPassword123!", "$2b$12$notargonatall")
    assert not hasher.verify("UserPassword123!", "plaintext")


def test_verify_dummy_never_raises():
    hasher = CredentialHasher()
    hasher.verify_dummy("anything")
    hasher.verify_dummy("")


def test_needs_rehash_when_parameters_change():
    weak = PasswordHasher(type=Type.ID, time_cost=1, memory_cost=8, parallelism=1)
    digest = weak.hash("UserPassword123!")
    hasher = CredentialHasher()
    assert hasher.needs_rehash(digest)
    assert not hasher.needs_rehash(hasher.hash("UserPassword123!"))
