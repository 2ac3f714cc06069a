import hashlib

from sella.payments.signature import build_param_string, encode_value, generate_signature


def md5(text: str) -> str:
    return hashlib.md5(text.encode("utf-8")).hexdigest()


def test_encode_value_matches_gateway_quirks():
    assert encode_value("hello world") == "hello+world"
    assert encode_value("it's (ok)!") == "it's+(ok)!"
    assert encode_value("a/b?c") == "a%2Fb%3Fc"
    assert encode_value("x&y=z") == "x%26y%3Dz"
    assert encode_value("café") == "caf%C3%A9"
    assert encode_value("1+1") == "1%2B1"


def test_param_string_sorted_without_signature_and_empty_fields():
    fields = {"b_field": "hello world", "a_field": "x&y=z", "empty": "", "signature": "abc", "none": None}
    assert build_param_string(fields) == "a_field=x%26y%3Dz&b_field=hello+world"


def test_passphrase_appended_without_plus_substitution():
    fields = {"b_field": "hello world", "a_field": "x&y=z"}
    expected = "a_field=x%26y%3Dz&b_field=hello+world&passphrase=my%20pass"
    assert build_param_string(fields, "my pass") == expected
    assert generate_signature(fields, "my pass") == md5(expected)


def test_signature_is_lowercase_md5_hex():
    sig = generate_signature({"amount": "150.00", "merchant_id": "10000100"})
    assert sig == md5("amount=150.00&merchant_id=10000100")
    assert len(sig) == 32
    assert sig == sig.lower()


def test_absent_passphrase_omits_segment():
    fields = {"amount": "10.00"}
    assert generate_signature(fields, None) == generate_signature(fields, "")
    assert "passphrase" not in build_param_string(fields, None)


def test_signature_ignores_existing_signature_value():
    fields = {"amount": "10.00", "item_name": "Wors"}
    assert generate_signature(fields) == generate_signature(dict(fields, signature="stale"))


def test_non_string_values_do_not_raise():
    assert build_param_string({"amount": 10, "qty": 0}) == "amount=10&qty=0"
