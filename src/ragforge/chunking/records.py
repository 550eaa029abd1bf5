"""Structure-aware chunking for JSON record collections."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Sequence, Tuple

from ragforge.chunking.base import ChunkingConfig, split_by_size, word_count
from ragforge.errors import validation_error
from ragforge.metrics.observability import get_logger
from ragforge.models import Chunk, ParsedDocument, SchemaProfile, SourceDocument

FAQ_SEPARATOR = "\n\n---\n\n"
DEFAULT_CATEGORY = "general"


@dataclass(frozen=True)
class RecordConfig(ChunkingConfig):
    """Options for :class:`RecordChunker`."""

    group_related_items: bool = True
    max_depth: int = 5
    group_key: str = "chunk_id"
    category_key: str = "category"


def group_size_variance(groups: Sequence[Sequence[Any]]) -> float:
    """Population variance of the group sizes; lower means more balanced."""

    if not groups:
        return 0.0
    sizes = [len(group) for group in groups]
    mean = sum(sizes) / len(sizes)
    return sum((size - mean) ** 2 for size in sizes) / len(sizes)


def is_more_balanced(candidate: Sequence[Sequence[Any]], baseline: Sequence[Sequence[Any]]) -> bool:
    """True when *candidate* has strictly lower group-size variance than *baseline*."""

    return group_size_variance(candidate) < group_size_variance(baseline)


class RecordChunker:
    """Chunking strategy for FAQ arrays and other JSON documents."""

    _logger = get_logger("chunking.records")

    def __init__(self, config: RecordConfig | None = None) -> None:
        self._config = (config or RecordConfig()).clamp()

    @property
    def config(self) -> RecordConfig:
        return self._config

    # Parsing -----------------------------------------------------------------

    def parse(self, document: SourceDocument) -> ParsedDocument:
        try:
            structure = json.loads(document.text)
        except json.JSONDecodeError as exc:
            raise validation_error(
                f"Invalid JSON in {document.filename}: {exc.msg} (line {exc.lineno})",
                document_id=document.document_id,
            ) from exc

        schema = self.analyze_schema(structure)
        skipped = 0
        if schema.schema_type == "faq":
            structure, skipped = self._complete_faq_items(structure)
        body = self.extract_text(structure, schema)
        metadata = self._metadata(structure, schema)
        metadata["word_count"] = word_count(body)
        if schema.schema_type == "faq":
            metadata["skipped_items"] = skipped
        return ParsedDocument(body=body, metadata=metadata, schema=schema, structure=structure)

    def analyze_schema(self, data: Any) -> SchemaProfile:
        properties: List[str] = []
        relationships: List[str] = []
        schema_type = "generic"
        item_count = 0

        if isinstance(data, list):
            item_count = len(data)
            first = data[0] if data else None
            if isinstance(first, Mapping) and first.get("question") and first.get("answer"):
                schema_type = "faq"
                properties.extend(["question", "answer"])
                properties.extend(key for key in first if key not in properties)
                if first.get(self._config.group_key):
                    relationships.append("chunk-reference")
                if first.get(self._config.category_key):
                    relationships.append("category-grouping")
        elif isinstance(data, Mapping):
            properties.extend(data.keys())
            item_count = 1
            if data.get("title") or data.get("sections"):
                schema_type = "documentation"
            elif data.get("config") or data.get("settings"):
                schema_type = "configuration"

        return SchemaProfile(
            schema_type=schema_type,
            properties=tuple(properties),
            depth=self.calculate_depth(data),
            item_count=item_count,
            relationships=tuple(relationships),
        )

    def calculate_depth(self, value: Any, current: int = 0) -> int:
        """Nesting depth of *value*, never reported above ``max_depth``."""

        if current >= self._config.max_depth:
            return current
        if isinstance(value, list):
            children = value
        elif isinstance(value, Mapping):
            children = list(value.values())
        else:
            return current
        return max((self.calculate_depth(child, current + 1) for child in children), default=current)

    def _complete_faq_items(self, items: Sequence[Any]) -> Tuple[List[Mapping[str, Any]], int]:
        complete = [
            item for item in items if isinstance(item, Mapping) and item.get("question") and item.get("answer")
        ]
        skipped = len(items) - len(complete)
        if skipped:
            self._logger.warning("records.faq_items_skipped", skipped=skipped, total=len(items))
        return complete, skipped

    def extract_text(self, data: Any, schema: SchemaProfile) -> str:
        if schema.schema_type == "faq":
            return self._faq_text(data)
        if schema.schema_type == "documentation":
            return self._documentation_text(data)
        return json.dumps(data, indent=2, ensure_ascii=False)

    def _faq_text(self, items: Sequence[Mapping[str, Any]]) -> str:
        blocks: List[str] = []
        for number, item in enumerate(items, start=1):
            parts = [f"Q{number}: {item['question']}", f"A{number}: {item['answer']}"]
            category = item.get(self._config.category_key)
            if category:
                parts.append(f"Category: {category}")
            tags = item.get("tags")
            if tags:
                parts.append(f"Tags: {', '.join(map(str, tags)) if isinstance(tags, list) else tags}")
            blocks.append("\n".join(parts))
        return FAQ_SEPARATOR.join(blocks)

    @staticmethod
    def _documentation_text(data: Mapping[str, Any]) -> str:
        parts: List[str] = []
        if data.get("title"):
            parts.append(f"# {data['title']}")
        if data.get("description"):
            parts.append(str(data["description"]))
        sections = data.get("sections")
        if isinstance(sections, list):
            for number, section in enumerate(sections, start=1):
                if not isinstance(section, Mapping):
                    parts.append(f"## Section {number}: {section}")
                    continue
                parts.append(f"## Section {number}: {section.get('title') or 'Untitled'}")
                if section.get("content"):
                    parts.append(str(section["content"]))
        if data.get("content"):
            parts.append(str(data["content"]))
        return "\n\n".join(parts)

    def _metadata(self, data: Any, schema: SchemaProfile) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {
            "type": "record-collection",
            "schema_type": schema.schema_type,
            "properties": list(schema.properties),
            "depth": schema.depth,
            "item_count": schema.item_count,
            "relationships": list(schema.relationships),
        }
        if schema.schema_type == "faq":
            metadata["question_count"] = len(data)
            metadata["categories"] = self._categories(data)
            metadata["average_question_length"] = _average_length(data, "question")
            metadata["average_answer_length"] = _average_length(data, "answer")
        elif schema.schema_type == "documentation":
            for key in ("title", "version", "author"):
                if data.get(key):
                    metadata[key] = data[key]
        return metadata

    def _categories(self, items: Sequence[Mapping[str, Any]]) -> List[str]:
        categories: Dict[str, None] = {}
        for item in items:
            category = item.get(self._config.category_key)
            if category:
                categories[str(category)] = None
            tags = item.get("tags")
            if isinstance(tags, list):
                for tag in tags:
                    categories[str(tag)] = None
        return list(categories)

    # Chunking ----------------------------------------------------------------

    def chunk(self, parsed: ParsedDocument) -> Sequence[Chunk]:
        schema = parsed.schema
        if schema is None:
            raise validation_error("Record chunker requires a schema profile", stage="chunking")
        if schema.schema_type == "faq":
            drafts = self._chunk_faq(parsed.structure)
        else:
            drafts = self._chunk_by_size(parsed.body, schema.schema_type)

        chunks: List[Chunk] = []
        for position, (chunk_id, text, extra) in enumerate(drafts):
            metadata: Dict[str, Any] = dict(parsed.metadata)
            metadata.update(extra)
            metadata["position"] = position
            metadata["chunk_length"] = len(text)
            chunks.append(Chunk(chunk_id=chunk_id, text=text, metadata=metadata))
        self._logger.debug("records.chunked", schema_type=schema.schema_type, chunk_count=len(chunks))
        return chunks

    def _item_text(self, item: Mapping[str, Any]) -> str:
        text = f"Q: {item['question']}\nA: {item['answer']}"
        category = item.get(self._config.category_key)
        if category:
            text += f"\nCategory: {category}"
        return text

    def _chunk_faq(self, items: Sequence[Mapping[str, Any]]) -> List[Tuple[str, str, Mapping[str, Any]]]:
        drafts: List[Tuple[str, str, Mapping[str, Any]]] = []
        if not self._config.group_related_items:
            for index, item in enumerate(items):
                text = self._item_text(item)
                drafts.append(
                    (
                        f"faq-item-{index}",
                        text,
                        {
                            "chunk_type": "faq-item",
                            "item_index": index,
                            "category": item.get(self._config.category_key) or DEFAULT_CATEGORY,
                            "original_chunk_id": item.get(self._config.group_key),
                            "oversized": len(text) > self._config.max_chunk_length,
                        },
                    )
                )
            return drafts

        grouping, groups = self.group_items(items)
        for group_index, (group_label, group) in enumerate(groups):
            texts = [self._item_text(item) for item in group]
            group_text = "\n\n".join(texts)
            base = {
                "chunk_type": "faq-group",
                "grouping": grouping,
                "group_index": group_index,
                "group_label": group_label,
                "category": group[0].get(self._config.category_key) or DEFAULT_CATEGORY,
            }
            if len(group_text) <= self._config.max_chunk_length:
                drafts.append((f"faq-group-{group_index}", group_text, {**base, "item_count": len(group)}))
                continue
            for sub_index, pairs in enumerate(self._split_group(texts)):
                text = "\n\n".join(pairs)
                drafts.append(
                    (
                        f"faq-group-{group_index}-{sub_index}",
                        text,
                        {
                            **base,
                            "sub_chunk_index": sub_index,
                            "item_count": len(pairs),
                            "oversized": len(text) > self._config.max_chunk_length,
                        },
                    )
                )
        return drafts

    def group_items(
        self, items: Sequence[Mapping[str, Any]]
    ) -> Tuple[str, List[Tuple[str, List[Mapping[str, Any]]]]]:
        """Group FAQ items by category or by shared grouping key.

        Key grouping is chosen only when every item carries the key and the
        resulting group sizes have strictly lower variance than the category
        grouping. Groups keep the order in which their first item appears.
        """

        by_category: Dict[str, List[Mapping[str, Any]]] = {}
        by_key: Dict[str, List[Mapping[str, Any]]] = {}
        for item in items:
            category = str(item.get(self._config.category_key) or DEFAULT_CATEGORY)
            by_category.setdefault(category, []).append(item)
            key = item.get(self._config.group_key)
            if key is not None and key != "":
                by_key.setdefault(str(key), []).append(item)

        keyed_total = sum(len(group) for group in by_key.values())
        if by_key and keyed_total == len(items) and is_more_balanced(list(by_key.values()), list(by_category.values())):
            return "chunk-reference", list(by_key.items())
        return "category", list(by_category.items())

    def _split_group(self, texts: Sequence[str]) -> List[List[str]]:
        """Pack whole Q/A texts into sub-chunks of up to ``chunk_size`` characters."""

        size = self._config.chunk_size
        pieces: List[List[str]] = []
        current: List[str] = []
        current_length = 0
        for text in texts:
            added = len(text) + (2 if current else 0)
            if current and current_length + added > size:
                pieces.append(current)
                current = [text]
                current_length = len(text)
            else:
                current.append(text)
                current_length += added
        if current:
            pieces.append(current)
        for piece in pieces:
            if len(piece) == 1 and len(piece[0]) > self._config.max_chunk_length:
                self._logger.warning("records.faq_pair_oversized", length=len(piece[0]))
        return pieces

    def _chunk_by_size(self, body: str, schema_type: str) -> List[Tuple[str, str, Mapping[str, Any]]]:
        windows = split_by_size(
            body,
            self._config.chunk_size,
            self._config.chunk_overlap,
            break_on_newline=True,
        )
        suffix = "single" if len(windows) == 1 else "size"
        return [
            (
                f"{schema_type}-chunk-{index}",
                text,
                {
                    "chunk_type": f"{schema_type}-{suffix}",
                    "chunk_index": index,
                    "start_offset": start,
                    "end_offset": end,
                },
            )
            for index, (text, start, end) in enumerate(windows)
        ]


def _average_length(items: Sequence[Mapping[str, Any]], field: str) -> int:
    lengths = [len(str(item[field])) for item in items if item.get(field)]
    return round(sum(lengths) / len(lengths)) if lengths else 0


__all__ = [
    "FAQ_SEPARATOR",
    "RecordChunker",
    "RecordConfig",
    "group_size_variance",
    "is_more_balanced",
]
