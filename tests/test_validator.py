"""Tests for input validation."""

import pytest

from session_engine.core.validator import format_size, validate_file, validate_input
from session_engine.errors import AttachmentValidationError, EmptyInput, ValidationError
from session_engine.types import ConversationConfig, FileInput, UploadConfig


def _file(name="a.png", mime="image/png", size=10) -> FileInput:
    return FileInput(filename=name, mime_type=mime, data=b"x" * size)


@pytest.mark.parametrize("text", ["", "   ", "\n\t "])
def test_blank_text_without_files(text):
    with pytest.raises(EmptyInput):
        validate_input(text, [], ConversationConfig(), UploadConfig())


def test_blank_text_with_file_ok():
    validate_input("", [_file()], ConversationConfig(), UploadConfig())


def test_message_length_limit():
    conversation = ConversationConfig(max_message_length=5)
    validate_input("12345", [], conversation, UploadConfig())
    with pytest.raises(ValidationError) as exc_info:
        validate_input("123456", [], conversation, UploadConfig())
    assert exc_info.value.reason == "message_too_long"
    assert not isinstance(exc_info.value, AttachmentValidationError)


def test_too_many_files():
    with pytest.raises(AttachmentValidationError) as exc_info:
        validate_input("hi", [_file()] * 3, ConversationConfig(), UploadConfig(max_files_per_turn=2))
    assert exc_info.value.reason == "too_many_files"


def test_size_limit_is_inclusive():
    config = UploadConfig(max_file_size=10)
    validate_file(_file(size=10), config)
    with pytest.raises(AttachmentValidationError) as exc_info:
        validate_file(_file(size=11), config)
    assert exc_info.value.reason == "size_exceeded"


def test_empty_file():
    with pytest.raises(AttachmentValidationError) as exc_info:
        validate_file(_file(size=0), UploadConfig())
    assert exc_info.value.reason == "empty_file"


def test_unsupported_type():
    with pytest.raises(AttachmentValidationError) as exc_info:
        validate_file(_file("doc.pdf", "application/pdf"), UploadConfig())
    assert exc_info.value.reason == "unsupported_type"
    assert "doc.pdf" in exc_info.value.user_message


def test_mime_parameters_ignored():
    validate_file(_file(mime="Image/PNG; charset=binary"), UploadConfig())


def test_format_size():
    assert format_size(512) == "512 B"
    assert format_size(2048) == "2.0 KB"
    assert format_size(10 * 1024 * 1024) == "10.0 MB"
