"""Unit tests for reference, prompt and label validation."""

import pytest

from photoforge.core.errors import (
    MalformedReference,
    PrivateNetworkBlocked,
    ReferenceCountError,
    UnsafeScheme,
    ValidationError,
)
from photoforge.core.validation import (
    MAX_GROUP_NAME_LENGTH,
    MAX_PROMPT_LENGTH,
    check_reference,
    is_private_host,
    validate_group_name,
    validate_prompt,
    validate_references,
)

PUBLIC_URL = "https://images.example.com/photo.jpg"


class TestErrorHierarchy:
    """Reference errors are all ValidationErrors."""

    @pytest.mark.parametrize(
        "error_class",
        [ReferenceCountError, MalformedReference, UnsafeScheme, PrivateNetworkBlocked],
    )
    def test_subclasses_validation_error(self, error_class):
        assert issubclass(error_class, ValidationError)


class TestReferenceCount:
    """Tests for the batch-size checks of validate_references."""

    def test_empty_list_rejected(self):
        with pytest.raises(ReferenceCountError, match="At least one file URL is required"):
            validate_references([])

    def test_not_a_list_rejected(self):
        with pytest.raises(ReferenceCountError, match="must be an array"):
            validate_references(PUBLIC_URL)

    @pytest.mark.parametrize("count", [1, 2, 15, 30])
    def test_accepts_one_to_thirty(self, count):
        validate_references([PUBLIC_URL] * count)  # Should not raise

    def test_thirty_one_rejected(self):
        with pytest.raises(ReferenceCountError, match="Maximum 30 files allowed"):
            validate_references([PUBLIC_URL] * 31)

    def test_custom_maximum(self):
        with pytest.raises(ReferenceCountError, match="Maximum 2 files allowed"):
            validate_references([PUBLIC_URL] * 3, max_count=2)

    def test_first_bad_reference_reported(self):
        """The list is accepted only if every item is safe."""
        refs = [PUBLIC_URL, "http://images.example.com/a.jpg", "file:///etc/passwd"]
        with pytest.raises(UnsafeScheme, match="Invalid file URL: Only HTTPS URLs are allowed"):
            validate_references(refs)


class TestSchemes:
    """Only https references are accepted."""

    def test_https_accepted(self):
        check_reference(PUBLIC_URL)  # Should not raise

    def test_https_with_port_accepted(self):
        check_reference("https://cdn.example.com:8443/a.png")  # Should not raise

    def test_http_rejected(self):
        with pytest.raises(UnsafeScheme, match="Only HTTPS URLs are allowed"):
            check_reference("http://images.example.com/photo.jpg")

    @pytest.mark.parametrize(
        "reference",
        ["data:image/png;base64,iVBORw0KGgo=", "file:///etc/passwd"],
    )
    def test_data_and_file_rejected(self, reference):
        with pytest.raises(UnsafeScheme, match="Data and file URIs are not allowed"):
            check_reference(reference)

    @pytest.mark.parametrize("reference", ["not a url", "/relative/path.png", ""])
    def test_missing_scheme_is_malformed(self, reference):
        with pytest.raises(MalformedReference):
            check_reference(reference)

    def test_non_string_is_malformed(self):
        with pytest.raises(MalformedReference):
            check_reference(42)

    def test_bad_port_is_malformed(self):
        with pytest.raises(MalformedReference):
            check_reference("https://example.com:99999/a.png")


class TestPrivateNetworks:
    """Loopback, private and metadata hosts are blocked."""

    @pytest.mark.parametrize(
        "host",
        [
            "localhost",
            "127.0.0.1",
            "0.0.0.0",
            "169.254.169.254",
            "10.0.0.1",
            "10.255.255.255",
            "192.168.1.10",
            "169.254.10.1",
        ],
    )
    def test_blocked(self, host):
        with pytest.raises(PrivateNetworkBlocked, match="Local and private IP addresses"):
            check_reference(f"https://{host}/photo.jpg")

    def test_ipv6_loopback_blocked(self):
        with pytest.raises(PrivateNetworkBlocked):
            check_reference("https://[::1]/photo.jpg")

    def test_hostname_case_ignored(self):
        with pytest.raises(PrivateNetworkBlocked):
            check_reference("https://LocalHost/photo.jpg")

    @pytest.mark.parametrize("second_octet", range(16, 32))
    def test_172_16_through_31_blocked(self, second_octet):
        assert is_private_host(f"172.{second_octet}.0.1") is True

    @pytest.mark.parametrize("host", ["172.15.0.1", "172.32.0.1"])
    def test_172_outside_range_accepted(self, host):
        assert is_private_host(host) is False
        check_reference(f"https://{host}/photo.jpg")  # Should not raise

    @pytest.mark.parametrize("host", ["8.8.8.8", "11.0.0.1", "192.169.0.1"])
    def test_public_addresses_accepted(self, host):
        assert is_private_host(host) is False

    def test_out_of_range_octet_is_not_an_address(self):
        assert is_private_host("10.0.0.256") is False

    def test_domain_names_are_public(self):
        assert is_private_host("internal.example.com") is False

    @pytest.mark.parametrize(
        "host",
        [
            "127.1",
            "2130706433",
            "0x7f.0.0.1",
            "0177.0.0.1",
            "0x7f000001",
            "192.168.1",
            "10.1",
            "0",
            "127.0.0.2",
        ],
    )
    def test_alternate_ipv4_spellings_blocked(self, host):
        """Shorthand, integer, hex and octal forms resolve to the same address."""
        assert is_private_host(host) is True
        with pytest.raises(PrivateNetworkBlocked):
            check_reference(f"https://{host}/photo.jpg")

    @pytest.mark.parametrize(
        "host", ["localhost.", "127.0.0.1.", "10.0.0.1.", "169.254.169.254.", "192.168.1.10."]
    )
    def test_trailing_dot_blocked(self, host):
        with pytest.raises(PrivateNetworkBlocked):
            check_reference(f"https://{host}/photo.jpg")

    @pytest.mark.parametrize(
        "host", ["[::ffff:127.0.0.1]", "[::ffff:10.0.0.1]", "[fe80::1]", "[fd00::1]", "[::]"]
    )
    def test_ipv6_private_forms_blocked(self, host):
        with pytest.raises(PrivateNetworkBlocked):
            check_reference(f"https://{host}/photo.jpg")

    @pytest.mark.parametrize("host", ["134744072", "0x08080808", "8.8.8.8.", "[2001:4860:4860::8888]"])
    def test_public_numeric_spellings_accepted(self, host):
        check_reference(f"https://{host}/photo.jpg")  # Should not raise


class TestValidatePrompt:
    """Tests for validate_prompt."""

    def test_returns_stripped_prompt(self):
        assert validate_prompt("  Brighten the room  ") == "Brighten the room"

    def test_blank_rejected(self):
        with pytest.raises(ValidationError, match="cannot be empty"):
            validate_prompt("   ")

    def test_non_string_rejected(self):
        with pytest.raises(ValidationError):
            validate_prompt(None)

    def test_maximum_length_accepted(self):
        prompt = "a" * MAX_PROMPT_LENGTH
        assert validate_prompt(prompt) == prompt

    def test_too_long_rejected(self):
        with pytest.raises(ValidationError, match="500 characters or less"):
            validate_prompt("a" * (MAX_PROMPT_LENGTH + 1))


class TestValidateGroupName:
    """Tests for validate_group_name."""

    def test_none_passes_through(self):
        assert validate_group_name(None) is None

    def test_blank_becomes_none(self):
        assert validate_group_name("   ") is None

    def test_strips_whitespace(self):
        assert validate_group_name(" Kitchen ") == "Kitchen"

    def test_too_long_rejected(self):
        with pytest.raises(ValidationError, match="140 characters or less"):
            validate_group_name("x" * (MAX_GROUP_NAME_LENGTH + 1))
