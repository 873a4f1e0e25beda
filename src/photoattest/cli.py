"""attestctl - command line for capture attestation and verification."""

from __future__ import annotations

import json
import logging
import sys
import traceback
from datetime import datetime
from pathlib import Path
from typing import Any

import click
import yaml

from photoattest import __version__
from photoattest.capture import capture
from photoattest.config import EngineConfig, load_settings
from photoattest.determinism import parse_timestamp
from photoattest.engine import VerificationEngine, VerificationResult
from photoattest.freezer import freeze
from photoattest.keys import ALG_ED25519, ALG_ES256, KeyRegistry, SoftwareKeyHandle
from photoattest.offline import OfflineCertifier
from photoattest.payload import PayloadError, parse_attestation, parse_metadata
from photoattest.scoring import ScoringPolicy
from photoattest.security import safe_read_bytes
from photoattest.tiles import TileHashTree, build_tree

EXIT_REJECTED = 2


def handle_error(error: Exception, debug: bool) -> None:
    """Handle errors with structured output.

    Args:
        error: The exception that occurred
        debug: Whether to show full traceback
    """
    if debug:
        traceback.print_exc()
    else:
        click.echo(f"Error: {error}", err=True)
        if isinstance(error, PayloadError):
            for detail in error.errors:
                click.echo(f"  - {detail}", err=True)
    sys.exit(1)


def _settings(ctx: click.Context) -> tuple[EngineConfig, ScoringPolicy]:
    return ctx.obj["config"], ctx.obj["policy"]


def _read_image(path: Path, config: EngineConfig) -> bytes:
    return safe_read_bytes(path, config.security_limits)


def _parse_now(value: str | None) -> datetime | None:
    return parse_timestamp(value) if value else None


def _emit(data: dict[str, Any], out: Path | None) -> None:
    """Print JSON to stdout, or write it to ``out``."""
    text = json.dumps(data, indent=2, sort_keys=True)
    if out is None:
        click.echo(text)
        return
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(text + "\n", encoding="utf-8")
    click.echo(f"Written to {out}")


def _report(result: VerificationResult, out: Path | None, markdown: Path | None) -> None:
    if out:
        result.write_json(out)
        click.echo(f"Result written to {out}")
    if markdown:
        result.write_markdown(markdown)
        click.echo(f"Report written to {markdown}")

    click.echo(f"Verdict: {result.verdict.value} (confidence {result.confidence:.2f}, mode {result.mode.value})")
    for name in sorted(result.checks):
        mark = "PASS" if result.checks[name] else "FAIL"
        click.echo(f"  [{mark}] {name}: {result.details.get(name, '')}")


@click.group()
@click.version_option(version=__version__, prog_name="attestctl")
@click.option("--config", "-c", "config_path", type=click.Path(exists=True, path_type=Path),
              help="YAML settings file (engine: and scoring: sections)")
@click.option("--verbose", "-v", is_flag=True, help="Log progress at info level")
@click.option("--debug", is_flag=True, help="Enable debug mode (debug logs, full tracebacks)")
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, verbose: bool, debug: bool):
    """Photo capture attestation and verification."""
    level = logging.DEBUG if debug else logging.INFO if verbose else logging.WARNING
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    try:
        ctx.obj["config"], ctx.obj["policy"] = load_settings(config_path)
    except (OSError, ValueError, yaml.YAMLError) as e:
        handle_error(e, debug)


@cli.command()
@click.option("--out", "-o", required=True, type=click.Path(path_type=Path), help="Private key PEM to write")
@click.option("--algorithm", "-a", type=click.Choice([ALG_ES256, ALG_ED25519]), default=ALG_ES256)
@click.option("--trust-store", type=click.Path(path_type=Path),
              help="YAML trust store to add the public key to (created if missing)")
@click.option("--force", is_flag=True, help="Overwrite an existing key file")
@click.pass_context
def keygen(ctx: click.Context, out: Path, algorithm: str, trust_store: Path | None, force: bool):
    """Generate a software device key.

    Stands in for a hardware-backed key on development machines.
    """
    debug = ctx.obj.get("debug", False)

    try:
        if out.exists() and not force:
            raise click.ClickException(f"{out} exists; use --force to overwrite")

        handle = SoftwareKeyHandle.generate(algorithm)
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_bytes(handle.to_pem())
        out.chmod(0o600)

        info = handle.attest_key()
        out.with_suffix(".pub.pem").write_text(handle.public_key_pem(), encoding="utf-8")

        if trust_store:
            registry = KeyRegistry.from_file(trust_store) if trust_store.exists() else KeyRegistry()
            registry.register(info)
            trust_store.parent.mkdir(parents=True, exist_ok=True)
            with open(trust_store, "w", encoding="utf-8") as f:
                yaml.safe_dump({"keys": registry.to_dict()}, f, sort_keys=True)
            click.echo(f"Trusted in {trust_store}")

        click.echo(f"Key ID: {info.key_id} ({info.algorithm})")
        click.echo(f"Private key written to {out}")
    except click.ClickException:
        raise
    except Exception as e:
        handle_error(e, debug)


@cli.command(name="freeze")
@click.argument("image", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--allow-unknown", is_flag=True, help="Accept bytes that are not a recognised image format")
@click.pass_context
def freeze_cmd(ctx: click.Context, image: Path, allow_unknown: bool):
    """Check that an image can be frozen and print its identity."""
    debug = ctx.obj.get("debug", False)
    config, _ = _settings(ctx)

    try:
        frozen = freeze(
            _read_image(image, config),
            limits=config.security_limits,
            require_known_format=config.require_known_format and not allow_unknown,
        )
        _emit({"format": frozen.format, "length": frozen.length, "sha256": frozen.sha256}, None)
    except Exception as e:
        handle_error(e, debug)


@cli.command()
@click.argument("image", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--tile-size", "-t", type=click.IntRange(min=1), help="Tile size in bytes")
@click.option("--leaves", is_flag=True, help="Include every leaf hash")
@click.option("--out", "-o", type=click.Path(path_type=Path), help="Write the tree JSON here")
@click.pass_context
def tree(ctx: click.Context, image: Path, tile_size: int | None, leaves: bool, out: Path | None):
    """Build the tile hash tree of an image."""
    debug = ctx.obj.get("debug", False)
    config, _ = _settings(ctx)

    try:
        frozen = freeze(_read_image(image, config), config.security_limits, config.require_known_format)
        built = build_tree(frozen, tile_size or config.tile_size, workers=config.hash_workers)
        _emit(built.to_dict(include_leaves=leaves or out is not None), out)
    except Exception as e:
        handle_error(e, debug)


@cli.command()
@click.argument("original", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("received", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--tile-size", "-t", type=click.IntRange(min=1), help="Tile size in bytes")
@click.option("--reference-tree", is_flag=True,
              help="ORIGINAL is a tree JSON written by 'attestctl tree --out'")
@click.pass_context
def diff(ctx: click.Context, original: Path, received: Path, tile_size: int | None, reference_tree: bool):
    """List the tiles where RECEIVED differs from ORIGINAL."""
    debug = ctx.obj.get("debug", False)
    config, policy = _settings(ctx)

    try:
        if reference_tree:
            with open(original, encoding="utf-8") as f:
                reference = TileHashTree.from_dict(json.load(f))
        else:
            frozen = freeze(_read_image(original, config), config.security_limits, config.require_known_format)
            reference = build_tree(frozen, tile_size or config.tile_size, workers=config.hash_workers)

        engine = VerificationEngine(policy=policy, config=config)
        changed = sorted(engine.localize_tampering(_read_image(received, config), reference))

        _emit(
            {
                "tile_size": reference.tile_size,
                "changed_tiles": changed,
                "byte_ranges": [list(reference.tile_range(i)) for i in changed if i < reference.tile_count],
            },
            None,
        )
        if not changed:
            click.echo("No differing tiles", err=True)
    except Exception as e:
        handle_error(e, debug)


@cli.command()
@click.argument("image", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--metadata", "-m", required=True, type=click.Path(exists=True, path_type=Path),
              help="Metadata bundle JSON")
@click.option("--key", "-k", required=True, type=click.Path(exists=True, path_type=Path), help="Private key PEM")
@click.option("--tile-size", "-t", type=click.IntRange(min=1), help="Tile size in bytes")
@click.option("--out", "-o", type=click.Path(path_type=Path), help="Write the attestation JSON here")
@click.pass_context
def attest(ctx: click.Context, image: Path, metadata: Path, key: Path, tile_size: int | None, out: Path | None):
    """Freeze, hash and sign an image with its capture metadata."""
    debug = ctx.obj.get("debug", False)
    config, _ = _settings(ctx)

    try:
        bundle = parse_metadata(metadata.read_bytes(), config.security_limits)
        handle = SoftwareKeyHandle.from_file(key)
        captured = capture(_read_image(image, config), bundle, handle, tile_size=tile_size, config=config)
        _emit(captured.attestation.to_dict(), out)
    except Exception as e:
        handle_error(e, debug)


@cli.command()
@click.argument("image", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--attestation", "-a", required=True, type=click.Path(exists=True, path_type=Path))
@click.option("--metadata", "-m", required=True, type=click.Path(exists=True, path_type=Path))
@click.option("--trust-store", type=click.Path(exists=True, path_type=Path), help="YAML trust store of device keys")
@click.option("--trust-embedded", is_flag=True, help="Accept the public key carried in the attestation")
@click.option("--now", help="Reference time (ISO 8601) for recency checks")
@click.option("--out", "-o", type=click.Path(path_type=Path), help="Write the result JSON here")
@click.option("--markdown", type=click.Path(path_type=Path), help="Write a markdown report here")
@click.pass_context
def verify(
    ctx: click.Context,
    image: Path,
    attestation: Path,
    metadata: Path,
    trust_store: Path | None,
    trust_embedded: bool,
    now: str | None,
    out: Path | None,
    markdown: Path | None,
):
    """Verify an image against its attestation.

    Exits 0 for AUTHENTIC and 2 for REJECTED.
    """
    debug = ctx.obj.get("debug", False)
    config, policy = _settings(ctx)

    try:
        if trust_embedded:
            config.trust_embedded_keys = True
        registry = KeyRegistry.from_file(trust_store) if trust_store else KeyRegistry()
        engine = VerificationEngine(policy=policy, key_registry=registry, config=config)

        result = engine.verify(
            _read_image(image, config),
            parse_attestation(attestation.read_bytes(), config.security_limits),
            parse_metadata(metadata.read_bytes(), config.security_limits),
            now=_parse_now(now),
        )
        _report(result, out, markdown)
    except Exception as e:
        handle_error(e, debug)
    else:
        if not result.authentic:
            sys.exit(EXIT_REJECTED)


@cli.command()
@click.argument("image", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--metadata", "-m", required=True, type=click.Path(exists=True, path_type=Path))
@click.option("--key", "-k", type=click.Path(exists=True, path_type=Path), help="Local private key PEM")
@click.option("--attestation", "-a", type=click.Path(exists=True, path_type=Path),
              help="Capture-time attestation to compare against")
@click.option("--now", help="Reference time (ISO 8601) for recency checks")
@click.option("--out", "-o", type=click.Path(path_type=Path), help="Write the result JSON here")
@click.option("--markdown", type=click.Path(path_type=Path), help="Write a markdown report here")
@click.pass_context
def offline(
    ctx: click.Context,
    image: Path,
    metadata: Path,
    key: Path | None,
    attestation: Path | None,
    now: str | None,
    out: Path | None,
    markdown: Path | None,
):
    """Certify an image locally, without a verification service.

    Always produces a result; the device signature check cannot pass
    offline.
    """
    debug = ctx.obj.get("debug", False)
    config, policy = _settings(ctx)

    try:
        certifier = OfflineCertifier(policy=policy, config=config)
        result = certifier.certify_offline(
            _read_image(image, config),
            json.loads(metadata.read_text(encoding="utf-8")),
            local_key_handle=SoftwareKeyHandle.from_file(key) if key else None,
            attestation=parse_attestation(attestation.read_bytes(), config.security_limits) if attestation else None,
            now=_parse_now(now),
        )
        _report(result, out, markdown)
    except Exception as e:
        handle_error(e, debug)


@cli.command()
@click.option("--host", "-h", default="127.0.0.1", help="Host to bind to")
@click.option("--port", "-p", default=8000, help="Port to listen on")
@click.option("--trust-store", type=click.Path(exists=True, path_type=Path), help="YAML trust store of device keys")
@click.pass_context
def serve(ctx: click.Context, host: str, port: int, trust_store: Path | None):
    """Start the HTTP verification service.

    Examples:
      attestctl serve --trust-store trust.yaml
      attestctl --config settings.yaml serve --host 0.0.0.0 --port 8080
    """
    import uvicorn

    from photoattest.server import create_app

    debug = ctx.obj.get("debug", False)
    config, policy = _settings(ctx)

    try:
        registry = KeyRegistry.from_file(trust_store) if trust_store else KeyRegistry()
        app = create_app(config=config, policy=policy, key_registry=registry, debug=debug)

        click.echo(f"Starting verification server on http://{host}:{port}")
        click.echo(f"API documentation: http://{host}:{port}/docs")
        click.echo(f"Trusted keys: {len(registry)}")

        uvicorn.run(app, host=host, port=port, log_level="debug" if debug else "info")
    except Exception as e:
        handle_error(e, debug)


def main() -> None:
    """Entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
