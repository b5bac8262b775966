"""Default task handlers registered on the task queue"""
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from sqlalchemy.orm import sessionmaker

from subsync.db.session import SessionLocal
from subsync.services.analytics_service import update_system_usage, update_user_usage
from subsync.tasks.task_queue import TaskQueue

logger = logging.getLogger(__name__)

# Takes chat-style prompt messages, returns {"summary", "tokens_input", "tokens_output", "cost"}
Summarizer = Callable[[List[Dict[str, str]]], Union[Dict[str, Any], Awaitable[Dict[str, Any]]]]

SUMMARY_SYSTEM_PROMPT = (
    "You are a helpful assistant that creates concise summaries of conversations. "
    "Create a summary that captures the main topics, key decisions, and important context "
    "from this conversation. Keep it under 200 words and focus on information that would be "
    "useful for continuing the conversation later."
)
MIN_MESSAGES_FOR_SUMMARY = 4


def build_summary_prompt(messages: List[Dict[str, Any]]) -> List[Dict[str, str]]:
    conversation = "\n".join(f"{message.get('role')}: {message.get('content')}" for message in messages)
    return [
        {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
        {"role": "user", "content": f"Please summarize this conversation:\n\n{conversation}"},
    ]


def make_summary_handler(summarizer: Optional[Summarizer], session_factory: sessionmaker = SessionLocal):
    async def handle_summary_generation(payload: Dict[str, Any]) -> Dict[str, Any]:
        thread_id = payload.get("thread_id")
        messages = payload.get("messages") or []
        user_id = payload.get("user_id")

        if not thread_id or len(messages) < MIN_MESSAGES_FOR_SUMMARY:
            raise ValueError("Invalid summary generation payload")
        if summarizer is None:
            raise RuntimeError("No summarizer configured")

        result = summarizer(build_summary_prompt(messages))
        if inspect.isawaitable(result):
            result = await result

        if user_id:
            db = session_factory()
            try:
                update_user_usage(user_id, {
                    "tokens_input": result.get("tokens_input", 0),
                    "tokens_output": result.get("tokens_output", 0),
                    "tokens_embedding": 0,
                    "cost_usd": result.get("cost", 0.0),
                    "is_new_thread": False,
                }, db)
            finally:
                db.close()

        logger.info(f"Generated summary for thread {thread_id}")
        return {"thread_id": thread_id, "summary": result.get("summary"), "cost": result.get("cost", 0.0)}

    return handle_summary_generation


def make_analytics_handler(session_factory: sessionmaker = SessionLocal):
    def handle_analytics_update(payload: Dict[str, Any]) -> Dict[str, Any]:
        update_type = payload.get("type")
        data = payload.get("data") or {}

        db = session_factory()
        try:
            if update_type == "user_usage":
                update_user_usage(payload["user_id"], data, db)
            elif update_type == "system_usage":
                update_system_usage(data, db)
            else:
                raise ValueError(f"Unknown analytics update type: {update_type}")
        finally:
            db.close()

        return {"success": True}

    return handle_analytics_update


def handle_usage_aggregation(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {"success": True, "period": payload.get("period"), "date": payload.get("date")}


def register_default_handlers(
    queue: TaskQueue,
    summarizer: Optional[Summarizer] = None,
    session_factory: sessionmaker = SessionLocal,
) -> TaskQueue:
    queue.register_handler("summary_generation", make_summary_handler(summarizer, session_factory))
    queue.register_handler("analytics_update", make_analytics_handler(session_factory))
    queue.register_handler("usage_aggregation", handle_usage_aggregation)
    return queue
