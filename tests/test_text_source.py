# tests/test_text_source.py
from unittest.mock import MagicMock

import pytest

from storia.errors import TextSourceError
from storia.text_source import TextSourceRegistry, TxtTextSource, paginate


class TestPaginate:

    def test_agrupa_parrafos_hasta_el_limite(self):
        text  = "uno dos tres\n\ncuatro cinco\n\nseis siete ocho nueve"
        pages = paginate(text, words_per_page=5)
        assert pages == ["uno dos tres\n\ncuatro cinco", "seis siete ocho nueve"]

    def test_parrafo_largo_se_corta_por_palabras(self):
        text  = " ".join(f"p{n}" for n in range(7))
        pages = paginate(text, words_per_page=3)
        assert pages == ["p0 p1 p2", "p3 p4 p5", "p6"]

    def test_texto_vacio(self):
        assert paginate("  \n\n ") == []


class TestTxtTextSource:

    def test_form_feed_marca_las_paginas(self, tmp_path):
        path = tmp_path / "libro.txt"
        path.write_text("Página uno.\fPágina dos.\f", encoding="utf-8")

        pages = TxtTextSource().extract(str(path))

        assert pages == [(1, "Página uno."), (2, "Página dos.")]

    def test_sin_form_feed_pagina_por_palabras(self, tmp_path):
        path = tmp_path / "libro.md"
        path.write_text("a b c\n\nd e f\n\ng h", encoding="utf-8")

        pages = TxtTextSource(words_per_page=3).extract(str(path))

        assert [number for number, _ in pages] == [1, 2, 3]

    def test_latin1_como_fallback(self, tmp_path):
        path = tmp_path / "viejo.txt"
        path.write_bytes("Canción del mar".encode("latin-1"))

        pages = TxtTextSource().extract(str(path))

        assert pages == [(1, "Canción del mar")]


class TestTextSourceRegistry:

    def test_formato_no_soportado(self, tmp_path):
        with pytest.raises(TextSourceError):
            TextSourceRegistry().extract(str(tmp_path / "libro.pdf"))

    def test_libro_sin_texto(self, tmp_path):
        path = tmp_path / "vacio.txt"
        path.write_text("   ", encoding="utf-8")
        with pytest.raises(TextSourceError):
            TextSourceRegistry().extract(str(path))

    def test_errores_de_la_fuente_se_envuelven(self, tmp_path):
        source = MagicMock()
        source.can_handle.return_value = True
        source.extract.side_effect = OSError("disco")

        with pytest.raises(TextSourceError, match="OSError"):
            TextSourceRegistry([source]).extract("libro.txt")

    def test_register_tiene_prioridad(self):
        custom = MagicMock()
        custom.can_handle.return_value = True
        custom.extract.return_value = [(1, "texto propio")]

        registry = TextSourceRegistry()
        registry.register(custom)

        assert registry.extract("libro.txt") == [(1, "texto propio")]
