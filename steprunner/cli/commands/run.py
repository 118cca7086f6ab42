"""Run command implementation."""

import json
import logging
from argparse import Namespace
from pathlib import Path
from typing import Any, Dict

from steprunner.loader import DocumentLoader
from steprunner.exceptions import DocumentValidationError, StepFailedError
from steprunner.workflow.executor import DocumentExecutor


logger = logging.getLogger(__name__)

LOG_LEVELS = {
    'debug': logging.DEBUG,
    'info': logging.INFO,
    'warn': logging.WARNING,
    'error': logging.ERROR,
}


def parse_context(args: Namespace) -> Dict[str, Any]:
    """Parse global variable overrides from command line arguments."""
    context: Dict[str, Any] = {}

    # Parse context from JSON file
    if args.context_file:
        context_file = Path(args.context_file)
        if not context_file.exists():
            raise FileNotFoundError(f"Context file not found: {context_file}")

        with open(context_file, 'r') as f:
            file_context = json.load(f)
            if not isinstance(file_context, dict):
                raise ValueError(f"Context file must contain a JSON object, got {type(file_context).__name__}")
            context.update(file_context)

    # key=value pairs win over the file
    if args.context:
        for item in args.context:
            if '=' not in item:
                raise ValueError(f"Invalid context format: {item}. Expected KEY=VALUE")
            key, value = item.split('=', 1)
            context[key] = value

    return context


def configure_logging(args: Namespace) -> None:
    log_level = LOG_LEVELS[args.log_level]
    if args.verbose:
        log_level = logging.DEBUG
    elif args.quiet:
        log_level = logging.ERROR

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def run_document(args: Namespace) -> int:
    """
    Load a document and run its steps in order.

    Returns:
        0 on success, 1 on a step failure or missing file, 2 on validation errors
    """
    configure_logging(args)

    try:
        document_path = Path(args.document).resolve()
        if not document_path.exists():
            logger.error(f"Document file not found: {document_path}")
            return 1

        logger.info(f"Loading document: {document_path}")
        loader = DocumentLoader()
        try:
            document = loader.load(document_path)
        except DocumentValidationError as e:
            for error in e.errors:
                logger.error(f"Validation error: {error.message}")
            return e.exit_code

        overrides = parse_context(args)
        if overrides:
            document.globals = {**document.globals, **overrides}

        if args.dry_run:
            logger.info("[DRY RUN] Rendering steps without executing them")

        executor = DocumentExecutor(
            document,
            dry_run=args.dry_run,
            verbose=args.verbose,
            retry_delay_ms=args.retry_delay,
        )

        try:
            executor.execute()
        except StepFailedError as e:
            logger.error(f"Error in step {e.index + 1} ({e.name}):")
            for message in e.chain():
                logger.error(f"  caused by {message}")
            return 1

        return 0

    except FileNotFoundError as e:
        logger.error(f"File not found: {e}")
        return 1
    except ValueError as e:
        logger.error(f"Validation error: {e}")
        return 2
    except Exception as e:
        logger.error(f"Unexpected error: {e}", exc_info=True)
        return 1
