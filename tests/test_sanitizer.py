from quickbot.core.sanitizer import is_gibberish, validate_user_hint


def test_keyboard_mash_is_flagged():
    assert is_gibberish("asdkjaskjdhaksjdh")


def test_symbol_heavy_message_is_flagged():
    assert is_gibberish("!!!???***###")


def test_repeated_character_run_is_flagged():
    assert is_gibberish("heyyyyyyyy there")


def test_digits_only_message_is_flagged():
    assert is_gibberish("12345 678")


def test_ordinary_questions_pass():
    for message in [
        "What are your opening hours?",
        "Do you ship to Canada?",
        "How do I reset my widget?",
        "Can I return a product after 30 days?",
    ]:
        assert not is_gibberish(message), message


def test_short_messages_are_left_to_scope_check():
    assert not is_gibberish("hi")
    assert not is_gibberish("  ")
    assert not is_gibberish("")


def test_non_latin_text_passes():
    assert not is_gibberish("¿Dónde está la tienda más cercana?")
    assert not is_gibberish("Где находится магазин?")


def test_long_real_word_is_not_a_mash():
    assert not is_gibberish("internationalization support")


def test_validate_user_hint():
    assert validate_user_hint(None) is None
    assert validate_user_hint("   ") is None
    assert validate_user_hint("friendly bakery in Lisbon") is None
    assert validate_user_hint("ab") == "Input is too vague to generate meaningful content."
    assert validate_user_hint("qwrtzpsdfgh") == "Input is too vague to generate meaningful content."


def test_consonant_heavy_real_words_pass():
    assert not is_gibberish("Tell me about the Schwarzschild radius")
    assert not is_gibberish("Do you stock Knightsbridge frames?")


def test_digit_and_whitespace_runs_are_not_repeats():
    assert not is_gibberish("Can I order 1000000 units?")
    assert not is_gibberish("hello      is anyone there?")
    assert is_gibberish("whyyyyyy is it broken")
