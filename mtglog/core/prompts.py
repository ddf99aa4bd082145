"""Prompt templates for the summarization phases and consolidation.

WHY: The minutes are written for a Japanese consulting team, so the
prompts, the "# 議事メモ" title and the JSON shapes are fixed product
decisions. Keeping them as data next to each other makes wording changes
reviewable without touching the stage logic.

HOW: PHASE_INSTRUCTIONS holds one instruction per phase, each ending with
the JSON shape it expects. build_phase_prompt() and
build_consolidation_prompt() wrap them with the metadata block and the
transcript delimiters.

RULES:
- Phase order is phase1 (key points), phase2 (sections), phase3 (speakers)
- Metadata lines list only non-empty fields, as "- field: value"
- The consolidation output is Markdown with a "# 議事メモ" title line
"""

from __future__ import annotations

import json
from typing import Any, Dict, Mapping, Optional

from mtglog.config import MAX_KEY_POINTS, SUMMARY_CHAR_LIMIT

PHASES = ("phase1", "phase2", "phase3")

SUMMARY_TITLE = "# 議事メモ"

_ASSISTANT_ROLE = "あなたは優秀な議事録作成アシスタントです。"

PHASE_INSTRUCTIONS: Dict[str, str] = {
    "phase1": (
        "「議事の要点」を日本語で箇条書き（最大{max_points}項目）にまとめ、"
        "以下のJSON形式で返してください。\n"
        '{{\n  "key_points": string[]\n}}'
    ).format(max_points=MAX_KEY_POINTS),
    "phase2": (
        "以下の文字起こしを論理的な章立て（アジェンダ）に分割し、"
        "各章タイトルを生成してください。JSON形式:\n"
        '{\n  "sections": { "title": string, "summary": string }[]\n}'
    ),
    "phase3": (
        "以下の文字起こしを話者ごとにまとめ、各話者ごとに発言要約を作成し、"
        "重要ポイントを抽出してください。JSON形式:\n"
        '{\n  "speakers": { "name": string, "summary": string }[]\n}'
    ),
}


def metadata_block(metadata: Optional[Mapping[str, Any]]) -> str:
    """Render the non-empty metadata fields as a bullet list."""
    if not metadata:
        return ""
    lines = [
        f"- {key}: {value}"
        for key, value in metadata.items()
        if value is not None and value != ""
    ]
    if not lines:
        return ""
    return "以下はミーティングのメタ情報です:\n" + "\n".join(lines) + "\n"


def build_phase_prompt(
    phase: str,
    transcript: str,
    metadata: Optional[Mapping[str, Any]] = None,
) -> str:
    instruction = _ASSISTANT_ROLE + metadata_block(metadata) + "\n" + PHASE_INSTRUCTIONS[phase]
    return (
        f"{instruction}\n"
        "--- 文字起こしここから ---\n"
        f"{transcript}\n"
        "--- 文字起こしここまで ---"
    )


def build_consolidation_prompt(
    phase_outputs: Mapping[str, Any],
    metadata: Optional[Mapping[str, Any]] = None,
) -> str:
    def dump(key: str) -> str:
        return json.dumps(phase_outputs[key], ensure_ascii=False)

    return (
        "あなたはプロのコンサルタントです。与えられたフェーズ1-3の結果をもとに、"
        f"ミーティング議事録を日本語で{SUMMARY_CHAR_LIMIT}字以内のMarkdownにまとめてください。\n\n"
        f"## メタ情報\n{metadata_block(metadata)}\n\n"
        f"## フェーズ1 要点\n{dump('phase1')}\n\n"
        f"## フェーズ2 章立て\n{dump('phase2')}\n\n"
        f"## フェーズ3 話者別まとめ\n{dump('phase3')}\n\n"
        "## 出力フォーマット\n"
        f'- タイトル行として "{SUMMARY_TITLE}" を含める\n'
        "- 適切なMarkdown見出しを用いる\n"
        f"- {SUMMARY_CHAR_LIMIT}字以内に収める"
    )
