import pytest

from keslib.headers import (
    ACCEPT,
    CONTENT_TYPE_BINARY,
    CONTENT_TYPE_HTML,
    CONTENT_TYPE_JSON,
    accepts,
)

ACCEPTS_CASES = [
    ({}, "", False),  # 0
    ({ACCEPT: []}, "", False),  # 1
    ({ACCEPT: [CONTENT_TYPE_JSON]}, CONTENT_TYPE_HTML, False),  # 2
    ({ACCEPT: [CONTENT_TYPE_HTML, CONTENT_TYPE_BINARY]}, CONTENT_TYPE_BINARY, True),  # 3
    ({ACCEPT: ["*/*"]}, CONTENT_TYPE_BINARY, True),  # 4
    ({ACCEPT: ["*/*"]}, CONTENT_TYPE_HTML, True),  # 5
    ({ACCEPT: ["*/*"]}, "", True),  # 6
    ({ACCEPT: ["*"]}, CONTENT_TYPE_HTML, False),  # 7
    ({ACCEPT: ["text/*"]}, CONTENT_TYPE_HTML, True),  # 8
    ({ACCEPT: ["text/*"]}, CONTENT_TYPE_JSON, False),  # 9
    ({ACCEPT: ["text*"]}, CONTENT_TYPE_HTML, False),  # 10
    ({ACCEPT: ["application/*"]}, CONTENT_TYPE_BINARY, True),  # 11
    ({ACCEPT: ["application/*"]}, CONTENT_TYPE_JSON, True),  # 12
]


@pytest.mark.parametrize("headers, content_type, expected", ACCEPTS_CASES)
def test_accepts(headers, content_type, expected):
    assert accepts(headers, content_type) is expected


def test_accepts_single_string_value():
    assert accepts({ACCEPT: "text/*"}, CONTENT_TYPE_HTML) is True
    assert accepts({ACCEPT: "text/*"}, CONTENT_TYPE_JSON) is False


def test_accepts_message_with_get_all():
    from email.message import Message

    msg = Message()
    msg[ACCEPT] = CONTENT_TYPE_JSON
    assert accepts(msg, CONTENT_TYPE_JSON) is True
    assert accepts(msg, CONTENT_TYPE_HTML) is False