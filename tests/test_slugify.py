import pytest

from pond.slugify import slugify


@pytest.mark.parametrize(
    "value, expected",
    [
        ("Hello World", "hello-world"),
        ("  multiple   spaces  ", "multiple-spaces"),
        ("under_scores_and-hyphens", "under-scores-and-hyphens"),
        ("mixed___---separators", "mixed-separators"),
        ("API v2.1 & Testing!", "api-v21-testing"),
        ("-leading-hyphens-", "leading-hyphens"),
        ("___trailing_underscores___", "trailing-underscores"),
        ("Café", "cafe"),
        ("Résumé", "resume"),
        ("François", "francois"),
        ("Привет Мир", "привет-мир"),
        ("北京 Beijing", "北京-beijing"),
        ("Coffee ☕ & Code 💻", "coffee-code"),
        ("HTTP/2 Protocol", "http2-protocol"),
        ("API v1.0 – Authentication", "api-v10-authentication"),
        ("User's Guide (français)", "users-guide-francais"),
    ],
)
def test_slugify_examples(value, expected):
    assert slugify(value) == expected


def test_slugify_blank_and_symbol_only_values():
    assert slugify("") == ""
    assert slugify(" \t\n") == ""
    assert slugify("@#$%^&*()") == ""


def test_slugify_turkish_locale():
    assert slugify("İstanbul", "tr") == "istanbul"
    assert slugify("ISTANBUL", "tr") == "ıstanbul"
    assert slugify("ISTANBUL") == "istanbul"


def test_slugify_long_input_has_clean_separators():
    result = slugify("word - " * 200)
    assert "--" not in result
    assert not result.startswith("-")
    assert not result.endswith("-")
