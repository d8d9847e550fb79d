# storia/text_source.py
import os
import re
from abc import ABC, abstractmethod

from storia.errors import TextSourceError

_FORM_FEED = "\f"
_DEFAULT_WORDS_PER_PAGE = 300


class TextSource(ABC):
    """
    Colaborador externo que entrega el texto del libro ya paginado:
    lista ordenada de (page_number, texto) con numeración 1..N.
    """

    @abstractmethod
    def can_handle(self, file_path: str) -> bool: ...

    @abstractmethod
    def extract(self, file_path: str) -> list[tuple[int, str]]: ...


class TxtTextSource(TextSource):
    """
    .txt y .md.

    Si el archivo trae saltos de página (form feed, lo que dejan
    pdftotext y similares) cada bloque es una página. Si no, el texto
    se pagina por párrafos hasta words_per_page palabras.
    """

    _SUPPORTED_EXTENSIONS = {".txt", ".md"}

    def __init__(self, words_per_page: int = _DEFAULT_WORDS_PER_PAGE):
        self._words_per_page = words_per_page

    def can_handle(self, file_path: str) -> bool:
        _, ext = os.path.splitext(file_path)
        return ext.lower() in self._SUPPORTED_EXTENSIONS

    def extract(self, file_path: str) -> list[tuple[int, str]]:
        raw = self._read_file(file_path)

        if _FORM_FEED in raw:
            pages = [block.strip() for block in raw.split(_FORM_FEED)]
            # Un form feed final no abre una página vacía
            while pages and not pages[-1]:
                pages.pop()
        else:
            pages = paginate(raw, self._words_per_page)

        return [(number, text) for number, text in enumerate(pages, start=1)]

    def _read_file(self, file_path: str) -> str:
        """Lee el archivo intentando UTF-8 primero, latin-1 como fallback."""
        try:
            with open(file_path, "r", encoding="utf-8") as f:
                return f.read()
        except UnicodeDecodeError:
            with open(file_path, "r", encoding="latin-1") as f:
                return f.read()


class EpubTextSource(TextSource):
    """
    .epub: cada documento del spine se limpia de HTML y se pagina
    igual que el texto plano. Ítems de relleno (<50 palabras) se descartan.

    Dependencia: ebooklib. La importación es lazy para no romper el
    resto del sistema si el usuario solo trabaja con TXT.
    """

    def __init__(self, words_per_page: int = _DEFAULT_WORDS_PER_PAGE):
        self._words_per_page = words_per_page

    def can_handle(self, file_path: str) -> bool:
        _, ext = os.path.splitext(file_path)
        return ext.lower() == ".epub"

    def extract(self, file_path: str) -> list[tuple[int, str]]:
        try:
            import ebooklib
            from ebooklib import epub
        except ImportError:
            raise ImportError(
                "ebooklib no está instalado. "
                "Ejecuta: pip install ebooklib"
            )

        book  = epub.read_epub(file_path, options={"ignore_ncx": True})
        pages = []
        for item in book.get_items_of_type(ebooklib.ITEM_DOCUMENT):
            text = _html_to_text(item.get_content())
            if len(text.split()) < 50:
                continue
            pages.extend(paginate(text, self._words_per_page))

        return [(number, text) for number, text in enumerate(pages, start=1)]


class TextSourceRegistry:
    """
    Registro de fuentes de texto. La primera que responda True a
    can_handle() gana. Cualquier fallo de extracción es TextSourceError,
    fatal para el libro.
    """

    def __init__(self, sources: list[TextSource] | None = None):
        self._sources = list(sources) if sources is not None else [
            EpubTextSource(),
            TxtTextSource(),   # va último: es el más permisivo
        ]

    def register(self, source: TextSource) -> None:
        """Registra una fuente adicional con la mayor prioridad."""
        self._sources.insert(0, source)

    def extract(self, file_path: str) -> list[tuple[int, str]]:
        source = next((s for s in self._sources if s.can_handle(file_path)), None)
        if source is None:
            raise TextSourceError(f"Formato no soportado: {file_path}")

        try:
            pages = source.extract(file_path)
        except TextSourceError:
            raise
        except Exception as e:
            raise TextSourceError(
                f"No se pudo extraer el texto de {file_path}: {type(e).__name__}: {e}"
            ) from e

        if not pages or not any(text.strip() for _, text in pages):
            raise TextSourceError(f"El libro no contiene texto legible: {file_path}")
        return pages


# ------------------------------------------------------------------
# Helpers de módulo
# ------------------------------------------------------------------

def paginate(text: str, words_per_page: int = _DEFAULT_WORDS_PER_PAGE) -> list[str]:
    """
    Agrupa párrafos en páginas de hasta words_per_page palabras.
    Un párrafo más largo que una página se corta por palabras.
    """
    paragraphs = [p.strip() for p in re.split(r"\n{2,}", text) if p.strip()]

    pages:  list[str] = []
    buffer: list[str] = []
    count = 0

    for paragraph in paragraphs:
        words = paragraph.split()

        while len(words) > words_per_page:
            if buffer:
                pages.append("\n\n".join(buffer))
                buffer, count = [], 0
            pages.append(" ".join(words[:words_per_page]))
            words = words[words_per_page:]

        if not words:
            continue
        if count + len(words) > words_per_page and buffer:
            pages.append("\n\n".join(buffer))
            buffer, count = [], 0
        buffer.append(" ".join(words))
        count += len(words)

    if buffer:
        pages.append("\n\n".join(buffer))
    return pages


def _html_to_text(html_bytes: bytes) -> str:
    try:
        html = html_bytes.decode("utf-8")
    except UnicodeDecodeError:
        html = html_bytes.decode("latin-1")

    # Etiquetas de bloque → párrafo nuevo antes de limpiar
    html = re.sub(r"<(p|br|div|h[1-6]|li|tr|blockquote)[^>]*>", "\n\n", html, flags=re.IGNORECASE)
    html = re.sub(r"<[^>]+>", "", html)
    html = (html
            .replace("&amp;", "&")
            .replace("&lt;", "<")
            .replace("&gt;", ">")
            .replace("&quot;", '"')
            .replace("&#39;", "'")
            .replace("&nbsp;", " "))
    html = re.sub(r"[ \t]+", " ", html)
    html = re.sub(r"\n{3,}", "\n\n", html)
    return html.strip()
