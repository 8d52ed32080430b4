"""Export conversations to Markdown and JSON formats."""

import json

from .core import Conversation, Message


def conversation_to_markdown(conversation: Conversation, messages: list[Message]) -> str:
    """Export a conversation and its messages as clean Markdown."""
    lines = [f"# {conversation.title}", ""]

    if conversation.model_name:
        lines.append(f"**Model:** {conversation.model_name}")
    if conversation.tags:
        lines.append(f"**Tags:** {', '.join(conversation.tags)}")
    if conversation.created:
        lines.append(f"**Created:** {conversation.created.isoformat()}")
    lines.append(f"**Messages:** {len(messages)}")
    if conversation.system_prompt:
        lines.extend(["", "> " + conversation.system_prompt.replace("\n", "\n> ")])
    lines.extend(["", "---", ""])

    for msg in messages:
        ts = ""
        if msg.created_at:
            ts = f" ({msg.created_at.strftime('%Y-%m-%d %H:%M')})"
        lines.append(f"## {msg.role.capitalize()}{ts}")
        lines.append("")
        lines.append(msg.content)
        lines.extend(["", "---", ""])

    return "\n".join(lines)


def conversation_to_json(conversation: Conversation, messages: list[Message]) -> str:
    """Export a conversation and its messages as structured JSON.

    Messages that were never persisted (an interrupted reply) are exported
    with a null id.
    """
    data = {
        "conversation": {
            "id": conversation.id,
            "title": conversation.title,
            "model_name": conversation.model_name,
            "system_prompt": conversation.system_prompt,
            "tags": conversation.tags,
            "folder_id": conversation.folder_id,
            "created": conversation.created.isoformat() if conversation.created else None,
            "updated": conversation.updated.isoformat() if conversation.updated else None,
        },
        "messages": [
            {
                "id": msg.server_id,
                "role": msg.role,
                "content": msg.content,
                "created_at": msg.created_at.isoformat() if msg.created_at else None,
                "tokens_used": msg.tokens_used,
            }
            for msg in messages
        ],
    }
    return json.dumps(data, indent=2, ensure_ascii=False)
