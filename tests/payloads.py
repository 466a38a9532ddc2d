"""
Provider webhook payload builders shared by tests.
"""


def status_change(bot_id: str, code: str, **extra) -> dict:
    """Provider bot.status_change payload."""
    status = {"code": code, **extra}
    return {"event": "bot.status_change", "data": {"bot": {"id": bot_id}, "status": status}}


def transcript_payload(bot_id: str, speaker: str, words, partial: bool = False, relative: float = 1.5) -> dict:
    """Provider real-time transcript payload."""
    return {
        "event": "transcript.partial_data" if partial else "transcript.data",
        "data": {
            "bot": {"id": bot_id},
            "data": {
                "words": [
                    {"text": w, "start_timestamp": {"relative": relative}} for w in words.split()
                ],
                "participant": {"id": 7, "name": speaker},
            },
        },
    }
