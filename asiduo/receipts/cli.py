"""CLI entry point for the receipts service."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from .config import load_config
from .db import open_stores
from .extraction import TextExtractor
from .models import LoyaltyProgram, Merchant, WorkStatus


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="asiduo-receipts",
        description="Asiduo: registra compras desde fotos de comprobantes y acredita programas de fidelidad",
    )
    parser.add_argument(
        "--config",
        "-c",
        type=str,
        default=None,
        help="Ruta del archivo de configuración (TOML)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Mostrar mensajes de depuración")

    sub = parser.add_subparsers(dest="command")

    # extract
    extract_parser = sub.add_parser("extract", help="Extraer datos de un texto OCR")
    extract_parser.add_argument("file", type=str, help="Archivo de texto (- para stdin)")
    extract_parser.add_argument("--merchant", type=str, default=None, help="Slug del comercio")

    # ocr
    ocr_parser = sub.add_parser("ocr", help="Leer el texto de una imagen")
    ocr_parser.add_argument("image", type=str)

    # enqueue
    enqueue_parser = sub.add_parser("enqueue", help="Encolar la foto de un comprobante")
    enqueue_parser.add_argument("--customer", type=str, required=True, help="Teléfono del cliente")
    enqueue_parser.add_argument("--image", type=str, required=True, help="Ruta de la imagen")
    enqueue_parser.add_argument("--name", type=str, default=None, help="Nombre del cliente")

    # queue operations
    sub.add_parser("sweep", help="Procesar los comprobantes pendientes")
    sub.add_parser("drain-outbox", help="Reintentar la distribución de compras")

    jobs_parser = sub.add_parser("jobs", help="Listar trabajos de la cola")
    jobs_parser.add_argument(
        "--status", type=str, default=None, choices=[s.value for s in WorkStatus]
    )
    jobs_parser.add_argument("--limit", type=int, default=50)

    requeue_parser = sub.add_parser("requeue", help="Reencolar un trabajo fallido")
    requeue_parser.add_argument("id", type=str)

    # loyalty
    redeem_parser = sub.add_parser("redeem", help="Canjear una recompensa")
    redeem_parser.add_argument("--customer", type=str, required=True)
    redeem_parser.add_argument("--merchant", type=str, required=True)
    redeem_parser.add_argument("--program", type=str, required=True)
    redeem_parser.add_argument("--reward", type=str, default=None)

    seed_parser = sub.add_parser("seed", help="Cargar comercios y programas desde JSON")
    seed_parser.add_argument("file", type=str)

    # services
    sub.add_parser("serve", help="Iniciar el webhook y el planificador")
    sub.add_parser("run", help="Iniciar solo el planificador")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    load_dotenv()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = load_config(args.config)

    try:
        match args.command:
            case "extract":
                _cmd_extract(config, args)
            case "ocr":
                asyncio.run(_cmd_ocr(config, args))
            case "enqueue":
                _cmd_enqueue(config, args)
            case "sweep":
                asyncio.run(_cmd_sweep(config))
            case "drain-outbox":
                _cmd_drain_outbox(config)
            case "jobs":
                _cmd_jobs(config, args)
            case "requeue":
                _cmd_requeue(config, args)
            case "redeem":
                _cmd_redeem(config, args)
            case "seed":
                _cmd_seed(config, args)
            case "serve":
                asyncio.run(_cmd_serve(config))
            case "run":
                asyncio.run(_cmd_run(config))
    except (ImportError, ValueError, KeyError, FileNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


def _stores(config):
    return open_stores(Path(config.database.path).expanduser())


def _cmd_extract(config, args) -> None:
    text = sys.stdin.read() if args.file == "-" else Path(args.file).read_text(encoding="utf-8")
    extractor = TextExtractor()
    for slug, overrides in config.extraction.overrides.items():
        extractor.register(slug, overrides)
    facts = extractor.extract(text, args.merchant)
    print(json.dumps(facts.to_dict(), ensure_ascii=False, indent=2))


async def _cmd_ocr(config, args) -> None:
    from .ocr import create_backend

    backend = create_backend(config)
    image = Path(args.image).read_bytes()
    print(await backend.recognize_text(image))


def _cmd_enqueue(config, args) -> None:
    from .queue import create_coordinator

    stores = _stores(config)
    try:
        coordinator = create_coordinator(config, stores)
        payload = {
            "customer_ref": args.customer,
            "image_ref": str(Path(args.image).expanduser().resolve()),
        }
        if args.name:
            payload["customer_name"] = args.name
        item = coordinator.enqueue(payload)
        print(item.id)
    finally:
        stores.close()


async def _cmd_sweep(config) -> None:
    from .queue import create_coordinator

    stores = _stores(config)
    try:
        coordinator = create_coordinator(config, stores)
        report = await coordinator.sweep()
        print(json.dumps(report.to_dict(), indent=2))
        await coordinator.pipeline.sender.aclose()
    finally:
        stores.close()


def _cmd_drain_outbox(config) -> None:
    from .ledger import PurchaseLedger

    stores = _stores(config)
    try:
        ledger = PurchaseLedger(stores.purchases, stores.customers, stores.merchants)
        print(f"Trabajos completados: {ledger.drain_outbox()}")
    finally:
        stores.close()


def _cmd_jobs(config, args) -> None:
    stores = _stores(config)
    try:
        status = WorkStatus(args.status) if args.status else None
        items = stores.queue.list_items(status, limit=args.limit)
    finally:
        stores.close()

    if not items:
        print("No hay trabajos.")
        return
    for item in items:
        error = f"  ({item.last_error})" if item.last_error else ""
        print(
            f"  {item.id}  {item.status.value:<12} intentos={item.attempts}"
            f"  {item.customer_ref}{error}"
        )


def _cmd_requeue(config, args) -> None:
    from .queue import DeliveryCoordinator

    stores = _stores(config)
    try:
        # requeue only touches the store
        coordinator = DeliveryCoordinator(stores.queue, pipeline=None)
        item = coordinator.requeue(args.id)
        print(f"Trabajo {item.id} reencolado")
    finally:
        stores.close()


def _cmd_redeem(config, args) -> None:
    from .loyalty import LoyaltyEngine
    from .whatsapp import normalize_phone

    stores = _stores(config)
    try:
        engine = LoyaltyEngine(stores.loyalty)
        progress = engine.redeem(
            normalize_phone(args.customer), args.merchant, args.program, args.reward
        )
        print(json.dumps(progress.to_dict(), ensure_ascii=False, indent=2))
    finally:
        stores.close()


def _cmd_seed(config, args) -> None:
    data = json.loads(Path(args.file).read_text(encoding="utf-8"))
    stores = _stores(config)
    try:
        for raw in data.get("merchants", []):
            stores.merchants.save_merchant(Merchant.from_dict(raw))
        for raw in data.get("programs", []):
            stores.loyalty.save_program(LoyaltyProgram.from_dict(raw))
    finally:
        stores.close()
    print(
        f"Comercios: {len(data.get('merchants', []))}, "
        f"programas: {len(data.get('programs', []))}"
    )


async def _cmd_serve(config) -> None:
    import uvicorn

    from .queue import create_coordinator
    from .scheduler import ReceiptScheduler
    from .webhook import create_app

    stores = _stores(config)
    coordinator = create_coordinator(config, stores)
    scheduler = ReceiptScheduler(config, coordinator)
    server = uvicorn.Server(
        uvicorn.Config(
            create_app(config, coordinator, stores),
            host=config.webhook.host,
            port=config.webhook.port,
        )
    )
    scheduler.start()
    try:
        await server.serve()
    finally:
        scheduler.stop()
        await coordinator.pipeline.sender.aclose()
        stores.close()


async def _cmd_run(config) -> None:
    from .queue import create_coordinator
    from .scheduler import ReceiptScheduler

    stores = _stores(config)
    coordinator = create_coordinator(config, stores)
    scheduler = ReceiptScheduler(config, coordinator)
    scheduler.start()
    for job in scheduler.get_jobs():
        print(f"  {job['id']}: {job['next_run']}")
    try:
        await asyncio.Event().wait()
    finally:
        scheduler.stop()
        await coordinator.pipeline.sender.aclose()
        stores.close()


if __name__ == "__main__":
    main()
