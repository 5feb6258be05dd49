"""Prompt builders for the seed, holding and follow-up messages."""

from chat_relay.models.session import ConversationSession

HOLDING_PROMPT = "Waiting for the initial statement..."


def build_seed_prompt(topic: str) -> str:
    return (
        f"Debate Topic: {topic}. Present your arguments concisely, as if in a human "
        "conversation. Aim for responses of around 2-4 sentences. Do not reveal that you "
        "are an AI or chatbot. Please start with your opening statement."
    )


def build_holding_prompt() -> str:
    return HOLDING_PROMPT


def build_follow_up_prompt(session: ConversationSession, text: str) -> str:
    """Prompt relaying ``text`` to the other endpoint.

    The first relay restates the topic; later ones carry only the latest statement.
    """
    if len(session.history) <= 1:
        return (
            f"This is a debate on the topic: {session.topic}\n\n"
            f'The other participant stated: "{text}"\n\n'
            "Please respond with your perspective on this topic. Keep your response concise "
            "(2-4 sentences) and engage directly with their points."
        )
    return (
        f"Continuing our debate on: {session.topic}\n\n"
        f'The other participant just said: "{text}"\n\n'
        "Respond directly to their points. Keep your response concise (2-4 sentences)."
    )
