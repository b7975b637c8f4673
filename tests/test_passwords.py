"""Tests for password hashing and strength rules."""

import pytest

from archauth.service.passwords import (
    SPECIAL_CHARACTERS,
    PasswordUtility,
    generate_random_password,
    validate_password_strength,
)


class TestPasswordHashing:
    def test_hash_is_salted_and_verifies(self, passwords):
        first = passwords.hash("Abcdefg1!")
        second = passwords.hash("Abcdefg1!")
        assert first != second
        assert first.startswith("$argon2id$")
        assert passwords.verify("Abcdefg1!", first)
        assert passwords.verify("Abcdefg1!", second)

    def test_wrong_password_is_rejected(self, passwords):
        stored = passwords.hash("Abcdefg1!")
        assert passwords.verify("Abcdefg1?", stored) is False

    def test_missing_or_garbage_hash_is_rejected(self, passwords):
        assert passwords.verify("Abcdefg1!", None) is False
        assert passwords.verify("Abcdefg1!", "") is False
        assert passwords.verify("Abcdefg1!", "not-a-hash") is False

    def test_needs_rehash_when_parameters_change(self, passwords):
        weak = passwords.hash("Abcdefg1!")
        stronger = PasswordUtility(time_cost=2, memory_cost=2048, parallelism=1)
        assert passwords.needs_rehash(weak) is False
        assert stronger.needs_rehash(weak) is True
        assert stronger.needs_rehash("garbage") is True


class TestPasswordStrength:
    @pytest.mark.parametrize(
        "candidate, reason",
        [
            ("", "Password is required"),
            (None, "Password is required"),
            ("Abc123!", "Password must be at least 8 characters long"),
            ("A" * 60 + "a" * 60 + "1!" + "x" * 7, "Password must be less than 128 characters long"),
            ("abcdefgh", "Password must contain at least one uppercase letter"),
            ("ABCDEFG1!", "Password must contain at least one lowercase letter"),
            ("Abcdefgh!", "Password must contain at least one number"),
            ("Abcdefg12", "Password must contain at least one special character"),
        ],
    )
    def test_first_violation_is_reported(self, candidate, reason):
        result = validate_password_strength(candidate)
        assert result.valid is False
        assert result.reason == reason

    def test_valid_password(self):
        result = validate_password_strength("Abcdefg1!")
        assert result.valid is True
        assert result.reason is None

    def test_length_boundaries(self):
        base = "Aa1!"
        assert validate_password_strength(base + "b" * 4).valid
        assert validate_password_strength(base + "b" * 124).valid
        assert not validate_password_strength(base + "b" * 125).valid

    def test_utility_exposes_same_rules(self, passwords):
        assert passwords.validate_strength("abcdefgh") == validate_password_strength("abcdefgh")


class TestRandomPassword:
    def test_generated_passwords_are_strong(self):
        for _ in range(50):
            candidate = generate_random_password()
            assert len(candidate) == 12
            assert validate_password_strength(candidate).valid, candidate

    def test_short_lengths_are_raised_to_minimum(self):
        candidate = generate_random_password(4)
        assert len(candidate) == 8
        assert any(ch in SPECIAL_CHARACTERS for ch in candidate)
