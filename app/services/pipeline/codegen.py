"""Code generator -- one LLM call in, one ``FileMap`` out.

Order matters: the raw response is written to disk first, then the stop
reason is checked, and only a complete response is parsed.  A truncated
response is never parsed, since partial output would look like a file
map with subtle holes.
"""

from __future__ import annotations

import logging
from pathlib import Path

from lanekit.contracts import FileMap
from lanekit.errors import MissingPrimaryFile, NoCodeBlocks
from lanekit.lanes import Lane, get_profile
from lanekit.response_parser import assemble_file_map, extract_code_blocks

from app.errors import GenerationTruncatedError, ParseFailureError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Raw response log
# ---------------------------------------------------------------------------


class RawResponseLog:
    """Writes every raw LLM response to ``<root>/<build_id>/NNN_<stage>.txt``."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)
        self._seq: dict[str, int] = {}

    def write(self, build_id: str, stage: str, completion) -> Path | None:
        seq = self._seq.get(build_id, 0) + 1
        self._seq[build_id] = seq
        path = self.root / build_id / f"{seq:03d}_{stage}.txt"
        header = (
            f"model: {completion.model}\n"
            f"stop_reason: {completion.stop_reason}\n"
            f"input_tokens: {completion.usage.input_tokens}\n"
            f"output_tokens: {completion.usage.output_tokens}\n"
            "---\n"
        )
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(header + completion.text, encoding="utf-8")
        except OSError as exc:
            logger.error("Could not persist raw response to %s: %s", path, exc)
            return None
        return path


# ---------------------------------------------------------------------------
# Generator
# ---------------------------------------------------------------------------


class CodeGenerator:
    """Generate (or regenerate) a lane's files from prompts."""

    def __init__(self, llm, raw_log: RawResponseLog, *, model: str, max_tokens: int) -> None:
        self.llm = llm
        self.raw_log = raw_log
        self.model = model
        self.max_tokens = max_tokens

    async def generate(
        self,
        *,
        lane: Lane,
        system_prompt: str,
        user_prompt: str,
        build_id: str,
        stage: str = "generate",
        require_primary: bool = True,
    ) -> FileMap:
        """Return the parsed ``FileMap``.

        Raises ``GenerationError`` (from the client), ``GenerationTruncatedError``
        and ``ParseFailureError``.
        """
        completion = await self.llm.complete(
            model=self.model,
            system_prompt=system_prompt,
            messages=[{"role": "user", "content": user_prompt}],
            max_tokens=self.max_tokens,
        )
        self.raw_log.write(build_id, stage, completion)

        if completion.stop_reason == "max_tokens":
            raise GenerationTruncatedError(
                f"{stage}: output stopped at the {self.max_tokens}-token limit",
                max_tokens=self.max_tokens,
            )

        blocks = extract_code_blocks(completion.text)
        try:
            file_map = assemble_file_map(
                blocks,
                lane,
                require_primary=require_primary,
                response_length=len(completion.text),
            )
        except NoCodeBlocks as exc:
            raise ParseFailureError(f"{stage}: {exc.message}", rule="code block extraction") from exc
        except MissingPrimaryFile as exc:
            raise ParseFailureError(
                f"{stage}: {exc.message}",
                file=get_profile(lane).primary_file,
                rule="primary entry point",
            ) from exc

        logger.info(
            "%s produced %d file(s) for %s (%d output tokens)",
            stage, len(file_map), lane.value, completion.usage.output_tokens,
        )
        return file_map


__all__ = ["CodeGenerator", "RawResponseLog"]
