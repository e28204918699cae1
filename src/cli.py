"""Command-line interface for submitting documents and inspecting state.

Provides subcommands for submitting files into a batch (optionally
waiting for extraction), showing or granting the license quota, and
showing a batch with its documents.
"""

import argparse
import asyncio
import json
import mimetypes
import sys
from datetime import timedelta
from pathlib import Path

from src.pipeline.errors import PipelineError, PollReadError, PollTimeout
from src.pipeline.factory import PipelineServices, build_services
from src.pipeline.models import (
    Batch,
    Capture,
    JobPriority,
    License,
    SubmissionContext,
    utcnow,
)
from src.pipeline.submission import SubmissionResult
from src.utils.config import ProjectSettings, load_config
from src.utils.logger import get_logger, setup_logging

logger = get_logger(__name__)


def _load_capture(path: Path) -> Capture:
    content_type, _ = mimetypes.guess_type(path.name)
    return Capture(
        file_name=path.name,
        content=path.read_bytes(),
        content_type=content_type or "application/octet-stream",
    )


def _result_row(result: SubmissionResult) -> dict[str, object]:
    row: dict[str, object] = {
        "file_name": result.file_name,
        "status": "failed" if result.error else "submitted",
        "document_id": result.document_id,
        "job_id": result.job.id if result.job else None,
    }
    if isinstance(result.error, (PollTimeout, PollReadError)):
        row["status"] = "processing"
    if result.error:
        row["error"] = result.error.message
    if result.warnings:
        row["warnings"] = result.warnings
    if result.extraction:
        row["status"] = "completed"
        row["extracted_metadata"] = result.extraction.extracted_metadata
    return row


async def _resolve_batch(
    services: PipelineServices,
    batch_id: str | None,
    project_id: str | None,
    batch_name: str | None,
) -> Batch:
    if batch_id:
        batch = await services.store.get_batch(batch_id)
        if batch is None:
            raise LookupError(f"Batch not found: {batch_id}")
        return batch
    if not project_id:
        raise LookupError("Either --batch or --project is required")
    name = batch_name or f"CLI batch {utcnow():%Y-%m-%d %H:%M:%S}"
    return await services.store.create_batch(Batch(project_id=project_id, name=name))


async def submit_files(
    services: PipelineServices,
    files: list[Path],
    batch_id: str | None = None,
    project_id: str | None = None,
    batch_name: str | None = None,
    wait: bool = False,
    metadata: dict | None = None,
    user_id: str = "cli",
) -> dict[str, object]:
    """Submit files into a batch with the local worker running alongside.

    A single file with ``wait`` follows the interactive flow; anything
    else is a multi-file submission followed by batch automation.

    Returns:
        Summary dict with the batch id, counts, and per-file rows.
    """
    batch = await _resolve_batch(services, batch_id, project_id, batch_name)
    project = services.config.get_project(batch.project_id) or ProjectSettings(
        id=batch.project_id
    )
    context = SubmissionContext(
        project=project,
        batch_id=batch.id,
        submitted_by=user_id,
        priority=JobPriority(services.config.submission.default_priority),
        metadata=metadata or {},
    )
    captures = [_load_capture(path) for path in files]

    worker_task = asyncio.create_task(services.worker.run_forever(idle_interval=0.2))
    try:
        if wait and len(captures) == 1:
            try:
                results = [await services.pipeline.submit_and_wait(captures[0], context)]
            except (PollTimeout, PollReadError) as exc:
                print(exc.message, file=sys.stderr)
                results = [
                    SubmissionResult(file_name=captures[0].file_name, error=exc)
                ]
        else:
            batch_result = await services.pipeline.submit_many(captures, context)
            results = batch_result.results
    finally:
        worker_task.cancel()

    successful = sum(1 for r in results if r.error is None)
    return {
        "batch_id": batch.id,
        "total": len(results),
        "successful": successful,
        "failed": len(results) - successful,
        "results": [_result_row(r) for r in results],
    }


async def license_info(
    services: PipelineServices, grant: int | None = None, days: int = 365
) -> dict[str, object]:
    """Show the configured license, optionally (re)granting its quota first."""
    license_id = services.gate.license_id
    if license_id is None:
        return {"metered": False}
    if grant is not None:
        await services.licenses.save_license(
            License(
                id=license_id,
                total_documents=grant,
                remaining_documents=grant,
                expires_at=utcnow() + timedelta(days=days),
            )
        )
        logger.info("Granted %d document(s) on license %s", grant, license_id)
    license = await services.licenses.get_license(license_id)
    if license is None:
        raise LookupError(f"License not found: {license_id}")
    return {
        "metered": True,
        "license_id": license.id,
        "status": license.status.value,
        "total_documents": license.total_documents,
        "remaining_documents": license.remaining_documents,
        "expires_at": license.expires_at.isoformat(),
    }


async def batch_info(services: PipelineServices, batch_id: str) -> dict[str, object]:
    """Show a batch, its counters, documents, and recorded duplicates."""
    batch = await services.store.get_batch(batch_id)
    if batch is None:
        raise LookupError(f"Batch not found: {batch_id}")
    documents = await services.store.list_documents(batch_id=batch_id)
    duplicates = await services.store.list_duplicates(batch_id)
    return {
        "id": batch.id,
        "name": batch.name,
        "status": batch.status.value,
        "total_documents": batch.total_documents,
        "processed_documents": batch.processed_documents,
        "documents": [
            {
                "id": d.id,
                "file_name": d.file_name,
                "validation_status": d.validation_status.value,
                "extracted": d.is_extracted,
            }
            for d in documents
        ],
        "duplicates": [
            {
                "document_id": m.document_id,
                "duplicate_document_id": m.duplicate_document_id,
                "type": m.duplicate_type,
                "score": round(m.similarity_score, 3),
            }
            for m in duplicates
        ],
    }


def _print_summary(summary: dict[str, object]) -> None:
    """Print submission summary to stdout."""
    print(f"\n{'=' * 50}")
    print("Submission Complete")
    print(f"{'=' * 50}")
    print(f"Batch:      {summary['batch_id']}")
    print(f"Total:      {summary['total']}")
    print(f"Successful: {summary['successful']}")
    print(f"Failed:     {summary['failed']}")


def main(argv: list[str] | None = None) -> None:
    """Parse CLI arguments and dispatch to the appropriate command.

    Args:
        argv: Command-line arguments (defaults to sys.argv).
    """
    parser = argparse.ArgumentParser(
        description="Document ingestion pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "-c", "--config", type=Path, default=None, help="Path to config YAML"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    submit_parser = subparsers.add_parser("submit", help="Submit documents to a batch")
    submit_parser.add_argument("files", type=Path, nargs="+", help="Files to submit")
    submit_parser.add_argument("-b", "--batch", help="Existing batch id")
    submit_parser.add_argument(
        "-p", "--project", help="Project id (creates a new batch)"
    )
    submit_parser.add_argument("--batch-name", help="Name for the new batch")
    submit_parser.add_argument(
        "-w", "--wait", action="store_true", help="Wait for extraction (single file)"
    )
    submit_parser.add_argument(
        "-m", "--metadata", help="Known field values as a JSON object"
    )
    submit_parser.add_argument("-o", "--output", type=Path, help="Output JSON file")

    license_parser = subparsers.add_parser("license", help="Show the license quota")
    license_parser.add_argument(
        "--grant", type=int, help="Reset the quota to this many documents"
    )
    license_parser.add_argument(
        "--days", type=int, default=365, help="Validity of a granted quota"
    )

    batch_parser = subparsers.add_parser("batch", help="Show a batch")
    batch_parser.add_argument("batch_id", help="Batch id")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    config = load_config(args.config)
    setup_logging(config.log_level)
    services = build_services(config)

    try:
        if args.command == "submit":
            missing = [str(f) for f in args.files if not f.is_file()]
            if missing:
                print(f"Error: not found: {', '.join(missing)}", file=sys.stderr)
                sys.exit(1)
            metadata = json.loads(args.metadata) if args.metadata else None
            summary = asyncio.run(
                submit_files(
                    services,
                    args.files,
                    batch_id=args.batch,
                    project_id=args.project,
                    batch_name=args.batch_name,
                    wait=args.wait,
                    metadata=metadata,
                )
            )
            output_str = json.dumps(summary, indent=2)
            if args.output:
                args.output.parent.mkdir(parents=True, exist_ok=True)
                args.output.write_text(output_str)
                print(f"Output written to {args.output}")
            else:
                print(output_str)
            _print_summary(summary)
            if summary["successful"] == 0:
                sys.exit(1)
        elif args.command == "license":
            info = asyncio.run(license_info(services, args.grant, args.days))
            print(json.dumps(info, indent=2))
        elif args.command == "batch":
            info = asyncio.run(batch_info(services, args.batch_id))
            print(json.dumps(info, indent=2))
    except (LookupError, PipelineError, json.JSONDecodeError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
