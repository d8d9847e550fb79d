# storia/cli.py
import logging
import sys
from pathlib import Path

import click
from dotenv import load_dotenv

from storia.config_loader import load_settings
from storia.errors import (
    AllAnalyzersExhaustedError,
    ResourceNotFoundError,
    StoriaError,
    ValidationError,
)
from storia.factory import build_cache, build_curator, build_orchestrator
from storia.orchestrator import BookAlreadyPublishedError, PipelineResult, PublishBlockedError
from storia.storage.models import BookStatus
from storia.storage.repository import Repository


# Carga .env una sola vez, antes que cualquier otra cosa
load_dotenv()

_SUPPORTED_FORMATS = {".epub", ".txt", ".md"}

_STATUS_COLORS = {
    BookStatus.READY_FOR_REVIEW: "cyan",
    BookStatus.PUBLISHED:        "green",
    BookStatus.FAILED:           "red",
}


# ------------------------------------------------------------------
# Grupo raíz
# ------------------------------------------------------------------

@click.group()
@click.version_option(package_name="storia")
@click.option("--verbose", "-v", is_flag=True, help="Muestra los logs de debug.")
def main(verbose: bool):
    """
    Storia: paisajes sonoros para libros.

    Divide cada libro en escenas narrativas y asigna a cada escena
    un loop ambiental que acompaña la lectura.
    """
    logging.basicConfig(
        level  = logging.DEBUG if verbose else logging.WARNING,
        format = "%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ------------------------------------------------------------------
# storia process
# ------------------------------------------------------------------

@main.command()
@click.option(
    "--book", "-b",
    required = True,
    type     = click.Path(exists=False),   # validamos nosotros para mejor mensaje
    help     = "Ruta al archivo del libro (.epub, .txt, .md)",
)
@click.option("--title", "-t", default=None, help="Título del libro (por defecto, el nombre del archivo)")
@click.option("--force", is_flag=True, help="Reprocesa aunque el libro ya esté publicado")
def process(book: str, title: str | None, force: bool):
    """Segmenta un libro en escenas y genera su paisaje sonoro."""

    _validate_file(book)

    try:
        orchestrator = build_orchestrator()
    except FileNotFoundError as e:
        _abort(str(e))
    except RuntimeError as e:
        _abort(str(e))

    try:
        book_id = orchestrator.ingest(book, title=title)
        result  = orchestrator.process_book(book_id, force=force)

    except BookAlreadyPublishedError as e:
        click.echo(f"[storia] {e}")
        return

    except AllAnalyzersExhaustedError as e:
        _error(
            f"Sin analizadores disponibles. {e}\n"
            f"Reejecutando el mismo comando el proceso retoma el libro."
        )
        sys.exit(2)

    except KeyboardInterrupt:
        click.echo(
            "\n[storia] Proceso interrumpido. "
            "Ejecuta el mismo comando para reanudarlo."
        )
        sys.exit(0)

    except Exception as e:
        _error(f"Error inesperado: {type(e).__name__}: {e}")
        sys.exit(1)

    finally:
        orchestrator.close()

    _print_summary(result)
    if result.status == BookStatus.FAILED:
        sys.exit(1)


# ------------------------------------------------------------------
# storia status / scenes
# ------------------------------------------------------------------

@main.command()
@click.option("--book-id", type=int, default=None, help="Libro concreto; sin él se listan todos")
def status(book_id: int | None):
    """Estado de procesamiento de los libros."""
    repo = _open_repo()

    books = [_require(repo.require_book, book_id)] if book_id is not None else repo.list_books()
    if not books:
        click.echo("[storia] No hay libros registrados.")
        return

    for book in books:
        label = click.style(book.status.value, fg=_STATUS_COLORS.get(book.status))
        click.echo(
            f"[{book.id:>3}] {book.title:<40} {label:<20} "
            f"págs={book.total_pages:<5} coste=${book.processing_cost:.4f}"
        )
        if book.processing_error:
            click.echo(click.style(f"      error: {book.processing_error}", fg="red"))


@main.command()
@click.option("--book-id", type=int, required=True)
def scenes(book_id: int):
    """Escenas de un libro y su Soundscape."""
    repo = _open_repo()
    _require(repo.require_book, book_id)

    soundscapes = repo.get_soundscapes_for_book(book_id)
    for scene in repo.get_scenes(book_id):
        soundscape = soundscapes.get(scene.id)
        d = scene.descriptors
        click.echo(
            f"#{scene.scene_number:<3} págs {scene.start_page}-{scene.end_page:<6} "
            f"{d.setting or '-'} / {d.mood or '-'} / {d.activity_level or '-'}"
        )
        if soundscape is not None:
            click.echo(f"      ♪ {soundscape.source_type.value}: {soundscape.audio_url}")
        elif scene.needs_curation:
            click.echo(click.style(
                f"      ⚠ requiere curación: {scene.curation_reason}", fg="yellow",
            ))
        else:
            click.echo("      (sin audio)")


# ------------------------------------------------------------------
# storia publish / curate
# ------------------------------------------------------------------

@main.command()
@click.option("--book-id", type=int, required=True)
def publish(book_id: int):
    """Publica un libro revisado."""
    try:
        orchestrator = build_orchestrator()
    except RuntimeError as e:
        _abort(str(e))

    try:
        orchestrator.publish(book_id)
    except PublishBlockedError as e:
        _abort(f"No se puede publicar: {e}")
    except ResourceNotFoundError as e:
        _abort(str(e))
    finally:
        orchestrator.close()

    click.echo(click.style(f"[storia] ✓ Libro {book_id} publicado", fg="green"))


@main.command()
@click.option("--scene-id", type=int, required=True)
@click.option("--audio", type=click.Path(exists=False), default=None, help="Archivo de audio a subir")
@click.option("--from-scene", type=int, default=None, help="Reutiliza el Soundscape de otra escena")
@click.option("--duration", type=int, default=30, show_default=True, help="Duración del loop (30-60 s)")
@click.option("--tag", "tags", multiple=True, metavar="CLAVE=VALOR", help="Tag del Soundscape (repetible)")
def curate(scene_id: int, audio: str | None, from_scene: int | None, duration: int, tags: tuple[str, ...]):
    """Asigna a mano el Soundscape de una escena."""
    if bool(audio) == bool(from_scene):
        _abort("Indica exactamente una de --audio o --from-scene.")

    repo    = _open_repo()
    curator = build_curator(repo, load_settings())

    try:
        if audio:
            soundscape = curator.curate_scene(
                scene_id,
                audio,
                duration_seconds = duration,
                tags             = _parse_tags(tags),
            )
        else:
            soundscape = curator.assign_from(scene_id, from_scene)
    except (ResourceNotFoundError, ValidationError) as e:
        _abort(str(e))
    except StoriaError as e:
        _error(str(e))
        sys.exit(1)

    click.echo(f"[storia] ✓ Escena {scene_id} → {soundscape.audio_url}")


# ------------------------------------------------------------------
# storia cache-stats / progress
# ------------------------------------------------------------------

@main.command("cache-stats")
@click.option("--validate", is_flag=True, help="Comprueba también las URLs guardadas")
def cache_stats(validate: bool):
    """Estadísticas de reutilización del cache de Soundscapes."""
    repo  = _open_repo()
    cache = build_cache(repo, load_settings())
    stats = cache.stats()

    click.echo(f"[storia]   Soundscapes  : {stats.total_soundscapes}")
    click.echo(f"[storia]   Escenas      : {stats.total_scenes}")
    click.echo(f"[storia]   Claves únicas: {stats.unique_cache_keys}")
    click.echo(f"[storia]   Media x clave: {stats.average_per_key}")

    if validate:
        broken = cache.validate_integrity()
        if broken:
            click.echo(click.style(f"[storia]   URLs inválidas: {broken}", fg="yellow"))
        else:
            click.echo("[storia]   URLs OK")


@main.command()
@click.option("--user", "user_id", required=True)
@click.option("--book-id", type=int, required=True)
@click.option("--page", type=int, default=None, help="Guarda la página actual; sin ella se muestra")
def progress(user_id: str, book_id: int, page: int | None):
    """Progreso de lectura de un usuario."""
    repo = _open_repo()

    if page is None:
        current = repo.get_reading_progress(user_id, book_id)
        if current is None:
            click.echo(f"[storia] {user_id} no ha empezado el libro {book_id}.")
        else:
            click.echo(f"[storia] {user_id}: página {current.current_page} ({current.updated_at})")
        return

    try:
        saved = repo.upsert_reading_progress(user_id, book_id, page)
    except (ResourceNotFoundError, ValidationError) as e:
        _abort(str(e))

    click.echo(f"[storia] ✓ {user_id}: página {saved.current_page}")


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------

def _open_repo() -> Repository:
    return Repository()


def _require(getter, *args):
    try:
        return getter(*args)
    except ResourceNotFoundError as e:
        _abort(str(e))


def _validate_file(path: str) -> None:
    """Verifica existencia y formato del archivo."""
    p = Path(path)

    if not p.exists():
        _abort(f"Archivo no encontrado: {path}")

    if not p.is_file():
        _abort(f"La ruta no es un archivo: {path}")

    if p.suffix.lower() not in _SUPPORTED_FORMATS:
        supported = ", ".join(sorted(_SUPPORTED_FORMATS))
        _abort(
            f"Formato no soportado: '{p.suffix}'\n"
            f"Formatos disponibles: {supported}"
        )


def _parse_tags(raw: tuple[str, ...]) -> dict:
    tags = {}
    for item in raw:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            _abort(f"Tag inválido: '{item}' (formato CLAVE=VALOR)")
        tags[key.strip()] = value.strip()
    return tags


def _print_summary(result: PipelineResult) -> None:
    """Imprime el resumen final del pipeline."""
    click.echo("")
    click.echo("─" * 50)
    if result.status == BookStatus.FAILED:
        click.echo(click.style(f"[storia] ✗ Proceso fallido: {result.error}", fg="red"))
    else:
        click.echo("[storia] ✓ Listo para revisión")
    click.echo(f"[storia]   Páginas      : {result.total_pages}")
    click.echo(f"[storia]   Escenas      : {result.total_scenes}")
    click.echo(f"[storia]   Desde cache  : {result.cache_hits}")
    click.echo(f"[storia]   Generadas    : {result.generated}")

    if result.failed_spreads:
        click.echo(f"[storia]   Spreads sin análisis: {result.failed_spreads}")

    if result.needs_curation:
        click.echo(
            click.style(
                f"[storia]   Sin audio    : {result.needs_curation} (requieren curación)",
                fg="yellow",
            )
        )

    click.echo(f"[storia]   Coste        : ${result.processing_cost:.4f}")
    click.echo("─" * 50)


def _abort(message: str) -> None:
    """Error de validación: culpa del usuario."""
    click.echo(click.style(f"[storia] Error: {message}", fg="red"), err=True)
    sys.exit(1)


def _error(message: str) -> None:
    """Error de sistema: no es culpa del usuario."""
    click.echo(click.style(f"[storia] {message}", fg="red"), err=True)
