import pytest

from tillguard.service.pin_security import (
    COMMON_PINS,
    PinStrength,
    evaluate_pin_strength,
    generate_secure_pin,
    validate_pin_complexity,
)


class TestPinComplexity:
    @pytest.mark.parametrize("pin", ["123", "12345", "12a4", "", " 482"])
    def test_must_be_four_digits(self, pin):
        ok, reason = validate_pin_complexity(pin)
        assert not ok
        assert reason == "PIN must be exactly 4 digits"

    @pytest.mark.parametrize("pin", ["1234", "0000", "1984", "2525", "1122"])
    def test_common_pins_rejected(self, pin):
        assert pin in COMMON_PINS
        assert validate_pin_complexity(pin) == (False, "This PIN is too common and easily guessed")

    def test_wraparound_is_not_a_sequence(self):
        ok, reason = validate_pin_complexity("9012")
        assert ok and reason is None

    def test_descending_runs_are_common(self):
        for pin in ("3210", "9876", "5432"):
            assert not validate_pin_complexity(pin)[0]

    def test_accepts_unpatterned_pin(self):
        assert validate_pin_complexity("4821") == (True, None)


class TestPinStrength:
    def test_rejected_pin_is_weak(self):
        assert evaluate_pin_strength("1111") is PinStrength.WEAK

    def test_alternating_pair_is_medium(self):
        # 0101 and 1010 are deliberately left off the common list
        assert validate_pin_complexity("0101") == (True, None)
        assert evaluate_pin_strength("0101") is PinStrength.MEDIUM

    def test_unpatterned_pin_is_strong(self):
        assert evaluate_pin_strength("4821") is PinStrength.STRONG

    def test_generated_pins_pass_complexity(self):
        for _ in range(200):
            pin = generate_secure_pin()
            assert len(pin) == 4 and pin.isdigit() and pin[0] != "0"
            assert validate_pin_complexity(pin)[0]
