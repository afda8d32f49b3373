"""
Per-project phrase search over document texts.

Each project has at most one open DocumentIndex, managed by an
IndexRegistry. Search results are SearchHits that feed the bulk
annotation operator.
"""

import logging
import re
import threading
from typing import Optional

from .bulk import SearchHit

logger = logging.getLogger(__name__)

TOKEN_PATTERN = re.compile(r"\w+|[^\w\s]", re.UNICODE)


def tokenize(text: str) -> list[tuple[int, int, str]]:
    """(begin, end, lowercased token) triples."""
    return [(m.start(), m.end(), m.group().lower()) for m in TOKEN_PATTERN.finditer(text)]


class DocumentIndex:
    """Token index of the documents of one project."""

    def __init__(self, project_id: str):
        self.project_id = project_id
        self._texts: dict[str, str] = {}
        self._tokens: dict[str, list[tuple[int, int, str]]] = {}

    def index_document(self, document_id: str, text: str) -> None:
        self._texts[document_id] = text
        self._tokens[document_id] = tokenize(text)

    def remove_document(self, document_id: str) -> None:
        self._texts.pop(document_id, None)
        self._tokens.pop(document_id, None)

    @property
    def document_count(self) -> int:
        return len(self._texts)

    def search(self, query: str, document_id: Optional[str] = None) -> list[SearchHit]:
        """
        Case-insensitive phrase search. A hit covers a run of whole tokens
        equal to the query tokens; partial tokens never match.
        """
        needle = [token for _, _, token in tokenize(query)]
        if not needle:
            return []

        document_ids = [document_id] if document_id is not None else sorted(self._texts)
        hits = []
        for doc_id in document_ids:
            tokens = self._tokens.get(doc_id)
            if tokens is None:
                continue
            text = self._texts[doc_id]
            for i in range(len(tokens) - len(needle) + 1):
                if all(tokens[i + k][2] == needle[k] for k in range(len(needle))):
                    begin = tokens[i][0]
                    end = tokens[i + len(needle) - 1][1]
                    hits.append(SearchHit(doc_id, begin, end, text[begin:end]))
        return hits


class IndexRegistry:
    """Open indexes keyed by project id."""

    def __init__(self):
        self._lock = threading.Lock()
        self._indexes: dict[str, DocumentIndex] = {}

    def open(self, project_id: str) -> DocumentIndex:
        """Return the project's index, creating it if it is not open yet."""
        with self._lock:
            index = self._indexes.get(project_id)
            if index is None:
                index = DocumentIndex(project_id)
                self._indexes[project_id] = index
                logger.info("Opened index for project [%s]", project_id)
            return index

    def get(self, project_id: str) -> Optional[DocumentIndex]:
        with self._lock:
            return self._indexes.get(project_id)

    def close(self, project_id: str) -> bool:
        """Drop the project's index. Returns False if it was not open."""
        with self._lock:
            index = self._indexes.pop(project_id, None)
        if index is None:
            return False
        logger.info("Closed index for project [%s] (%d documents)",
                    project_id, index.document_count)
        return True

    def open_project_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._indexes)
