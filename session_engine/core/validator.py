"""Fail-fast checks on user input, run before any network call."""

from __future__ import annotations

from ..errors import AttachmentValidationError, EmptyInput, ValidationError
from ..types import ConversationConfig, FileInput, UploadConfig


def format_size(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"


def validate_file(file: FileInput, config: UploadConfig) -> None:
    """Raise AttachmentValidationError for oversize or disallowed files."""
    if file.size_bytes > config.max_file_size:
        raise AttachmentValidationError(
            f"{file.filename}: {file.size_bytes} bytes exceeds {config.max_file_size}",
            reason="size_exceeded",
            user_message=(
                f"The file {file.filename} is too large ({format_size(file.size_bytes)}). "
                f"Maximum size is {format_size(config.max_file_size)}."
            ),
        )
    if file.size_bytes == 0:
        raise AttachmentValidationError(
            f"{file.filename}: empty file",
            reason="empty_file",
            user_message=f"The file {file.filename} is empty.",
        )
    mime = file.mime_type.lower().split(";", 1)[0].strip()
    if mime not in config.allowed_mime_types:
        raise AttachmentValidationError(
            f"{file.filename}: unsupported type {file.mime_type}",
            reason="unsupported_type",
            user_message=(
                f"The file type of {file.filename} is not supported. "
                "Please use an image, video or audio file."
            ),
        )


def validate_input(
    text: str,
    files: list[FileInput] | None,
    conversation: ConversationConfig,
    uploads: UploadConfig,
) -> None:
    """Validate one submission. Raises EmptyInput or a ValidationError."""
    files = files or []
    if not text.strip() and not files:
        raise EmptyInput("Blank message with no attachments")

    if len(text) > conversation.max_message_length:
        raise ValidationError(
            f"Message length {len(text)} exceeds {conversation.max_message_length}",
            reason="message_too_long",
            user_message=(
                f"Your message is too long (max {conversation.max_message_length} characters)."
            ),
        )

    if len(files) > uploads.max_files_per_turn:
        raise AttachmentValidationError(
            f"{len(files)} files exceed the limit of {uploads.max_files_per_turn}",
            reason="too_many_files",
            user_message=f"Too many files (max {uploads.max_files_per_turn} per message).",
        )

    for file in files:
        validate_file(file, uploads)
