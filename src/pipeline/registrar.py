"""Document registration: durable payload upload plus the document row."""

from src.storage.base import BlobStorage, DocumentStore
from src.utils.logger import get_logger

from .errors import RegistrationError, UploadError
from .models import Document, NormalizedPayload, SubmissionContext
from .naming import apply_naming_pattern

logger = get_logger(__name__)


class DocumentRegistrar:
    """Persists the initial record of a captured document.

    Args:
        store: Document/batch store.
        blobs: Durable storage for inline payload bytes.
    """

    def __init__(self, store: DocumentStore, blobs: BlobStorage) -> None:
        self.store = store
        self.blobs = blobs

    async def upload(self, payload: NormalizedPayload) -> NormalizedPayload:
        """Move an inline payload to durable storage.

        Returns:
            The payload carrying a storage reference instead of bytes.
            Payloads that are already references are returned as is.

        Raises:
            UploadError: If the storage write fails.
        """
        if not payload.is_inline:
            return payload
        try:
            ref = await self.blobs.put(payload.blob, payload.content_type)
        except Exception as exc:
            raise UploadError(
                f"Could not store {payload.file_name}: {exc}",
                file_name=payload.file_name,
            ) from exc
        logger.debug("Uploaded %s as %s", payload.file_name, ref)
        return payload.with_reference(ref)

    async def register(
        self, payload: NormalizedPayload, context: SubmissionContext
    ) -> tuple[Document, NormalizedPayload]:
        """Upload the payload if needed and create the document row.

        The row starts with empty extracted text. Creating it also counts
        it in the batch's total and processed counters, in the same store
        operation.

        Returns:
            The persisted document and the (now durable) payload.

        Raises:
            UploadError: If the payload cannot be stored.
            RegistrationError: If the document row cannot be written.
        """
        payload = await self.upload(payload)

        file_name = apply_naming_pattern(
            context.project.naming_pattern, context.metadata, payload.file_name
        )
        document = Document(
            project_id=context.project.id,
            batch_id=context.batch_id,
            file_name=file_name,
            file_type=payload.file_type,
            storage_ref=payload.storage_ref,
            uploaded_by=context.submitted_by,
        )

        try:
            document = await self.store.create_document(document)
        except Exception as exc:
            raise RegistrationError(
                f"Could not save {payload.file_name}: {exc}",
                file_name=payload.file_name,
            ) from exc

        logger.info(
            "Registered document %s (%s) in batch %s",
            document.id,
            document.file_name,
            document.batch_id,
        )
        return document, payload
