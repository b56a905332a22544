from identity_chain.errors import AggregateError, join_errors


def test_join_errors_with_nothing_is_none():
    assert join_errors() is None
    assert join_errors(None, None) is None


def test_join_errors_with_single_error_returns_it():
    error = ValueError("boom")

    assert join_errors(None, error, None) is error


def test_join_errors_keeps_every_error_in_order():
    first, second = OSError("bind"), RuntimeError("flush")

    joined = join_errors(first, None, second)

    assert isinstance(joined, AggregateError)
    assert list(joined) == [first, second]
    assert str(joined) == "bind; flush"


def test_join_errors_flattens_nested_aggregates():
    a, b, c = ValueError("a"), ValueError("b"), ValueError("c")

    joined = join_errors(join_errors(a, b), c)

    assert joined.errors == (a, b, c)
    assert len(joined) == 3
