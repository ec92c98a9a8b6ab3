from __future__ import annotations

from types import SimpleNamespace

from storyrelay.services.prompt_builder import PromptBuilder


def _turn(role: str, text: str, speaker: str | None = None) -> SimpleNamespace:
    return SimpleNamespace(role=role, text=text, speaker=speaker)


def test_prompt_builder_puts_memory_in_system_message() -> None:
    builder = PromptBuilder()
    messages = builder.build_messages(
        system_prompt="You narrate a desert odyssey.",
        history=[],
        user_message="Cross the dunes.",
        summary="The caravan left the oasis.",
        plot_points=["Water is running low", "A storm follows"],
    )

    assert len(messages) == 2
    system_prompt = messages[0]["content"]
    assert system_prompt.startswith("You narrate a desert odyssey.")
    assert "[Story so far]\nThe caravan left the oasis." in system_prompt
    assert "[Key plot points]\n- Water is running low\n- A storm follows" in system_prompt
    assert messages[1] == {"role": "user", "content": "Cross the dunes."}


def test_prompt_builder_trims_history_and_prefixes_speakers() -> None:
    builder = PromptBuilder(max_history=2)
    history = [
        _turn("user", "Old question"),
        _turn("assistant", "Old answer"),
        _turn("user", "Where now?", speaker="Mira"),
        _turn("assistant", "North."),
    ]

    messages = builder.build_messages(
        system_prompt="",
        history=history,
        user_message="Follow the star.",
        speaker="Tomas",
    )

    assert messages == [
        {"role": "user", "content": "Mira: Where now?"},
        {"role": "assistant", "content": "North."},
        {"role": "user", "content": "Tomas: Follow the star."},
    ]


def test_prompt_builder_without_history_window_sends_only_new_message() -> None:
    builder = PromptBuilder(max_history=0)
    messages = builder.build_messages(
        system_prompt="Narrate.",
        history=[_turn("user", "Ignored")],
        user_message="Begin.",
    )

    assert [message["role"] for message in messages] == ["system", "user"]
