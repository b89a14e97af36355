#!/usr/bin/env python3
"""BudgetBakers MCP Server - Provides access to BudgetBakers Wallet data via MCP protocol."""

import asyncio
import functools
import json
import logging
import os
import signal
import time
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog
from mcp.server.fastmcp import FastMCP

from budgetbakers_mcp.config import Settings, load_env_file
from budgetbakers_mcp.dates import convert_dates_to_strings
from budgetbakers_mcp.errors import BudgetBakersError
from budgetbakers_mcp.logging_config import configure_logging
from budgetbakers_mcp.repository import EntityRepository
from budgetbakers_mcp.service import BudgetBakersService

# Load .env file if it exists (for local development)
load_env_file(Path(".env"))

# stderr only; stdout carries MCP frames
configure_logging(os.getenv("BUDGETBAKERS_LOG_LEVEL", "INFO"))

log = structlog.get_logger(__name__)
logger = logging.getLogger(__name__)

SENSITIVE_ARGS = ("password", "token")

# Session tracking for usage analytics
current_session_id = str(uuid.uuid4())
usage_patterns: Dict[str, List[Dict[str, Any]]] = {}


def track_usage(func: Any) -> Any:
    """Decorator to track tool usage patterns for analytics."""
    @functools.wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> Any:
        start_time = time.time()
        tool_name = func.__name__

        safe_kwargs = {k: v for k, v in kwargs.items() if k not in SENSITIVE_ARGS}
        logger.info(f"[TOOL_CALL] {tool_name} | args: {safe_kwargs}")

        call_info: Dict[str, Any] = {
            "session_id": current_session_id,
            "tool_name": tool_name,
            "timestamp": time.time(),
            "args": list(args),
            "kwargs": safe_kwargs,
        }

        try:
            result = await func(*args, **kwargs)
            execution_time = time.time() - start_time

            result_chars = len(str(result)) if result else 0
            result_kb = result_chars / 1024

            extra_stats = ""
            try:
                if isinstance(result, str) and result.strip().startswith('{'):
                    parsed = json.loads(result)
                    if isinstance(parsed, dict) and isinstance(parsed.get("data"), list):
                        extra_stats = f" | data: {len(parsed['data'])} items"
            except (json.JSONDecodeError, KeyError, TypeError):
                pass

            call_info.update({
                "status": "success",
                "execution_time": execution_time,
                "result_size": result_chars,
            })

            logger.info(f"[ANALYTICS] tool_called: {tool_name} | time: {execution_time:.3f}s | status: success")
            logger.info(f"[RESULT_SIZE] {tool_name} | chars: {result_chars:,} | size: {result_kb:.2f} KB{extra_stats}")

            usage_patterns.setdefault(tool_name, []).append(call_info)
            return result

        except Exception as e:
            execution_time = time.time() - start_time
            call_info.update({
                "status": "error",
                "execution_time": execution_time,
                "error": str(e),
            })
            usage_patterns.setdefault(tool_name, []).append(call_info)

            logger.error(f"[ANALYTICS] tool_error: {tool_name} | time: {execution_time:.3f}s | error: {str(e)}")
            raise

    return wrapper


# Initialize the FastMCP server
mcp = FastMCP("budgetbakers")

# Built on first tool call so importing this module never needs credentials
services: Optional[BudgetBakersService] = None


def get_services() -> BudgetBakersService:
    global services
    if services is None:
        settings = Settings.from_env()
        logger.info(f"[AUTH] Creating BudgetBakers service for {settings.api_url}")
        services = BudgetBakersService(settings)
    return services


def format_success(message: str, data: Any = None) -> str:
    payload: Dict[str, Any] = {"success": True, "message": message}
    if data is not None:
        payload["data"] = convert_dates_to_strings(data)
    return json.dumps(payload, indent=2)


def format_error(message: str, details: Optional[str] = None) -> str:
    error: Dict[str, Any] = {"message": message}
    if details:
        error["details"] = details
    return json.dumps({"success": False, "error": error}, indent=2)


def _drop_none(**filters: Any) -> Dict[str, Any]:
    return {k: v for k, v in filters.items() if v is not None}


async def _list(repo: EntityRepository, label: str, filters: Dict[str, Any]) -> str:
    try:
        documents = await repo.list(filters)
    except BudgetBakersError as e:
        log.error("Failed to list documents", kind=repo.kind.name, error=str(e), filters=filters)
        raise
    return format_success(f"{label} retrieved successfully", documents)


async def _get(repo: EntityRepository, label: str, doc_id: str) -> str:
    try:
        document = await repo.get(doc_id)
    except BudgetBakersError as e:
        log.error("Failed to get document", kind=repo.kind.name, doc_id=doc_id, error=str(e))
        raise
    if document is None:
        return format_error(f"{label} not found", f"No {repo.kind.name} with id '{doc_id}'")
    return format_success(f"{label} retrieved successfully", document)


async def _create(repo: EntityRepository, label: str, fields: Dict[str, Any]) -> str:
    try:
        document = await repo.create(fields)
    except BudgetBakersError as e:
        log.error("Failed to create document", kind=repo.kind.name, error=str(e))
        raise
    return format_success(f"{label} created successfully", document)


async def _update(
    repo: EntityRepository, label: str, doc_id: str, fields: Dict[str, Any], rev: Optional[str]
) -> str:
    try:
        document = await repo.update(doc_id, fields, rev=rev)
    except BudgetBakersError as e:
        log.error("Failed to update document", kind=repo.kind.name, doc_id=doc_id, error=str(e))
        raise
    if document is None:
        return format_error(f"{label} not found", f"No {repo.kind.name} with id '{doc_id}'")
    return format_success(f"{label} updated successfully", document)


async def _delete(repo: EntityRepository, label: str, doc_id: str, rev: Optional[str]) -> str:
    try:
        result = await repo.delete(doc_id, rev=rev)
    except BudgetBakersError as e:
        log.error("Failed to delete document", kind=repo.kind.name, doc_id=doc_id, error=str(e))
        raise
    if result is None:
        return format_error(f"{label} not found", f"No {repo.kind.name} with id '{doc_id}'")
    return format_success(f"{label} deleted successfully", result.model_dump())


# Session tools

@mcp.tool()
@track_usage
async def login(email: str, password: str) -> str:
    """Log in to BudgetBakers with explicit credentials.

    Runs a fresh login handshake, makes the new session the one used by all
    other tools, and returns the session and CSRF cookies so they can be set
    on a browser.
    """
    try:
        cookies = await get_services().login(email, password)
    except BudgetBakersError as e:
        logger.error(f"[AUTH] Login failed: {e}")
        raise
    return format_success(
        "Login successful",
        [cookie.model_dump(mode="json") for cookie in cookies],
    )


@mcp.tool()
@track_usage
async def get_session_status() -> str:
    """Report the cached BudgetBakers session state without logging in."""
    provider = get_services().provider
    cached = provider.cached
    status: Dict[str, Any] = {
        "state": provider.state.value,
        "cached": cached is not None,
        "handshake_count": provider.handshake_count,
        "last_error": provider.last_error,
    }
    if cached is not None:
        status["db_name"] = cached.descriptor.db_name
        status["owner_id"] = cached.descriptor.owner_id
    return format_success("Session status", status)


# Accounts

@mcp.tool()
@track_usage
async def list_accounts(name_starts_with: Optional[str] = None, archived: Optional[bool] = None) -> str:
    """List accounts.

    Args:
        name_starts_with: Case-insensitive name prefix
        archived: Only archived (true) or only active (false) accounts
    """
    return await _list(
        get_services().accounts, "Accounts",
        _drop_none(name_starts_with=name_starts_with, archived=archived),
    )


@mcp.tool()
@track_usage
async def get_account(account_id: str) -> str:
    """Get one account by id."""
    return await _get(get_services().accounts, "Account", account_id)


@mcp.tool()
@track_usage
async def create_account(data: Dict[str, Any]) -> str:
    """Create an account.

    Args:
        data: Account fields. Required: name, currencyId. Optional:
                initAmount (minor units), accountType, color, excludeFromStats,
                archived, position, creditCard
    """
    return await _create(get_services().accounts, "Account", data)


@mcp.tool()
@track_usage
async def update_account(account_id: str, data: Dict[str, Any], rev: Optional[str] = None) -> str:
    """Update an account.

    Args:
        account_id: Account id
        data: Fields to change (same names as create_account)
        rev: Optional revision; the update fails with a conflict if the account changed since
    """
    return await _update(get_services().accounts, "Account", account_id, data, rev)


@mcp.tool()
@track_usage
async def delete_account(account_id: str, rev: Optional[str] = None) -> str:
    """Delete an account."""
    return await _delete(get_services().accounts, "Account", account_id, rev)


# Records

@mcp.tool()
@track_usage
async def list_records(
    account_id: Optional[str] = None,
    category_id: Optional[str] = None,
    currency_id: Optional[str] = None,
    label_id: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
) -> str:
    """List transaction records.

    Args:
        account_id: Filter by account id
        category_id: Filter by category id
        currency_id: Filter by currency id
        label_id: Only records carrying this label id
        date_from: Records on or after this date. Supports natural language like 'last month', '30 days ago'
        date_to: Records on or before this date. Supports natural language
    """
    return await _list(
        get_services().records, "Records",
        _drop_none(
            account_id=account_id,
            category_id=category_id,
            currency_id=currency_id,
            label_id=label_id,
            date_from=date_from,
            date_to=date_to,
        ),
    )


@mcp.tool()
@track_usage
async def get_record(record_id: str) -> str:
    """Get one record by id."""
    return await _get(get_services().records, "Record", record_id)


@mcp.tool()
@track_usage
async def create_record(data: Dict[str, Any]) -> str:
    """Create a transaction record.

    Args:
        data: Record fields. Required: accountId, categoryId, currencyId,
                amount (non-zero integer in minor units, negative for expenses),
                recordDate (ISO-8601). Optional: type, refAmount, paymentType,
                recordState, transfer, payee, note, labels
    """
    return await _create(get_services().records, "Record", data)


@mcp.tool()
@track_usage
async def update_record(record_id: str, data: Dict[str, Any], rev: Optional[str] = None) -> str:
    """Update a transaction record.

    Args:
        record_id: Record id
        data: Fields to change (same names as create_record)
        rev: Optional revision for optimistic concurrency
    """
    return await _update(get_services().records, "Record", record_id, data, rev)


@mcp.tool()
@track_usage
async def delete_record(record_id: str, rev: Optional[str] = None) -> str:
    """Delete a transaction record."""
    return await _delete(get_services().records, "Record", record_id, rev)


# Categories

@mcp.tool()
@track_usage
async def list_categories(
    name_starts_with: Optional[str] = None,
    custom_category: Optional[bool] = None,
    envelope_id: Optional[int] = None,
) -> str:
    """List categories.

    Args:
        name_starts_with: Case-insensitive name prefix
        custom_category: Only user-created (true) or built-in (false) categories
        envelope_id: Only categories in this envelope
    """
    return await _list(
        get_services().categories, "Categories",
        _drop_none(name_starts_with=name_starts_with, custom_category=custom_category, envelope_id=envelope_id),
    )


@mcp.tool()
@track_usage
async def get_category(category_id: str) -> str:
    """Get one category by id."""
    return await _get(get_services().categories, "Category", category_id)


@mcp.tool()
@track_usage
async def create_category(data: Dict[str, Any]) -> str:
    """Create a custom category.

    Args:
        data: Category fields. Required: name, envelopeId (must start with 3,
                the custom-category envelopes). Optional: color, icon, iconName,
                customCategory, categoryType, parentId
    """
    return await _create(get_services().categories, "Category", data)


@mcp.tool()
@track_usage
async def update_category(category_id: str, data: Dict[str, Any], rev: Optional[str] = None) -> str:
    """Update a custom category. Only categories whose envelopeId starts with 3 can be changed."""
    return await _update(get_services().categories, "Category", category_id, data, rev)


@mcp.tool()
@track_usage
async def delete_category(category_id: str, rev: Optional[str] = None) -> str:
    """Delete a custom category. Only categories whose envelopeId starts with 3 can be deleted."""
    return await _delete(get_services().categories, "Category", category_id, rev)


# Labels

@mcp.tool()
@track_usage
async def list_labels(name_starts_with: Optional[str] = None) -> str:
    """List labels (hashtags)."""
    return await _list(get_services().labels, "Labels", _drop_none(name_starts_with=name_starts_with))


@mcp.tool()
@track_usage
async def get_label(label_id: str) -> str:
    """Get one label by id."""
    return await _get(get_services().labels, "Label", label_id)


@mcp.tool()
@track_usage
async def create_label(data: Dict[str, Any]) -> str:
    """Create a label.

    Args:
        data: Label fields. Required: name. Optional: color, archived
    """
    return await _create(get_services().labels, "Label", data)


@mcp.tool()
@track_usage
async def update_label(label_id: str, data: Dict[str, Any], rev: Optional[str] = None) -> str:
    """Update a label."""
    return await _update(get_services().labels, "Label", label_id, data, rev)


@mcp.tool()
@track_usage
async def delete_label(label_id: str, rev: Optional[str] = None) -> str:
    """Delete a label."""
    return await _delete(get_services().labels, "Label", label_id, rev)


# Diagnostics

@mcp.tool()
async def get_usage_analytics() -> str:
    """Summarise tool usage in this server session: call counts, timings and errors."""
    all_calls = [call for calls in usage_patterns.values() for call in calls]
    times = [call["execution_time"] for call in all_calls if "execution_time" in call]
    errors = [call for call in all_calls if call.get("status") == "error"]

    analytics = {
        "session_id": current_session_id,
        "total_tools_called": len(all_calls),
        "tools_usage_frequency": {name: len(calls) for name, calls in usage_patterns.items()},
        "performance_metrics": {
            "avg_execution_time": sum(times) / len(times) if times else 0.0,
            "max_execution_time": max(times) if times else 0.0,
            "error_count": len(errors),
        },
        "recent_errors": [
            {"tool_name": call["tool_name"], "error": call.get("error")} for call in errors[-5:]
        ],
    }
    return json.dumps(analytics, indent=2)


async def main() -> None:
    """Main entry point for the server.

    The server starts immediately without authentication. The BudgetBakers
    handshake runs lazily on the first tool call that needs the store.
    """
    logger.info("=" * 70)
    logger.info("[AUTH] MCP Server starting - LAZY AUTHENTICATION MODE")
    logger.info("[AUTH] Authentication will be performed on-demand (first tool call)")
    logger.info("=" * 70)

    try:
        logger.info("Starting MCP server with stdio transport")
        await mcp.run_stdio_async()
    except BrokenPipeError:
        logger.info("Client disconnected (broken pipe) - shutting down gracefully")
    except ConnectionResetError:
        logger.info("Connection reset by client - shutting down gracefully")
    except KeyboardInterrupt:
        logger.info("Received interrupt signal - shutting down")
    except Exception as e:
        logger.error(f"Unexpected error in MCP server: {e}")
        raise
    finally:
        if services is not None:
            await services.aclose()


def _is_shutdown_error(exc: BaseException) -> bool:
    return isinstance(exc, (BrokenPipeError, ConnectionResetError, OSError, EOFError)) or (
        isinstance(exc, Exception) and any(
            err_str in str(exc).lower()
            for err_str in ["broken pipe", "connection reset", "[errno 32]", "eof"]
        )
    )


def _handle_sigterm(signum: int, frame: Any) -> None:
    logger.info(f"Received signal {signum}, shutting down gracefully")
    raise KeyboardInterrupt


def install_signal_handlers() -> None:
    """SIGTERM stops the server like Ctrl-C; SIGINT keeps its default handler."""
    signal.signal(signal.SIGTERM, _handle_sigterm)
    signal.signal(signal.SIGINT, signal.default_int_handler)


def run() -> None:
    """Console entry point with graceful shutdown handling."""
    install_signal_handlers()

    try:
        asyncio.run(main())
    except ExceptionGroup as eg:
        # anyio task groups wrap client disconnects
        if any(not _is_shutdown_error(exc) for exc in eg.exceptions):
            logger.error(f"Fatal error: {eg}")
            raise
        logger.info("Shutdown complete (broken pipe expected during client disconnect)")
    except BrokenPipeError:
        logger.info("Broken pipe during shutdown - exiting quietly")
    except ConnectionResetError:
        logger.info("Connection reset during shutdown - exiting quietly")
    except KeyboardInterrupt:
        logger.info("Interrupted by user - exiting")
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        raise


if __name__ == "__main__":
    run()
