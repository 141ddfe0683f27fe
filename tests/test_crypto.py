from bridge_agent import crypto


def test_generate_token_is_random_hex() -> None:
    a, b = crypto.generate_token(), crypto.generate_token()
    assert a != b
    assert len(a) == 64
    int(a, 16)


def test_verifier_without_token_accepts_anything() -> None:
    v = crypto.TokenVerifier(None)
    assert v.required is False
    assert v.verify(None) is True
    assert v.verify("whatever") is True


def test_verifier_checks_presented_token() -> None:
    v = crypto.TokenVerifier("s3cret")
    assert v.required is True
    assert v.verify("s3cret") is True
    assert v.verify("s3cre") is False
    assert v.verify("") is False
    assert v.verify(None) is False


def test_verifier_does_not_keep_token_in_clear() -> None:
    v = crypto.TokenVerifier("s3cret")
    assert "s3cret" not in repr(vars(v))


def test_empty_token_means_open_handshake() -> None:
    assert crypto.TokenVerifier("").required is False
