import argparse
import logging
import sys

from cookieshop.billing_client import BillingClient
from cookieshop.billing_sync_job import CHANNELS, run_billing_sync_job
from cookieshop.exceptions import CookieShopError
from cookieshop.services.billing_sync import BillingSyncService
from cookieshop.session_factory import session_factory
from cookieshop.settings import settings

# 로그 설정
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("cookieshop.cli")


def run_sync_command(args) -> int:
    """상품 → Stripe 대량 동기화"""
    session = session_factory()
    try:
        client = BillingClient.from_settings()
        logger.info(f"[CLI] Starting Stripe product sync (channel={args.channel}, force={args.force})")
        job = run_billing_sync_job(
            session,
            client,
            channel=args.channel,
            force_update=args.force,
            skip_existing=args.skip_existing,
        )
        if job.skipped_run:
            logger.warning("[CLI] Another sync run holds the lock. Exiting.")
            return 1
        logger.info(
            f"[CLI] Sync finished: status={job.run.status}, "
            f"synced={len(job.results)}, errors={job.run.error_count}"
        )
        return 0 if job.run.status == "success" else 1
    except CookieShopError as e:
        logger.error(f"[CLI] Sync failed: {e}")
        return 1
    finally:
        session.close()


def run_product_command(args) -> int:
    """단일 상품 동기화/보관"""
    session = session_factory()
    try:
        service = BillingSyncService(session, BillingClient.from_settings())
        if args.command == "archive-product":
            archived = service.archive_product(args.product_id)
            logger.info(f"[CLI] Product {args.product_id} archived={archived}")
        else:
            result = service.sync_product(args.product_id, force_update=args.force)
            logger.info(
                f"[CLI] Product {result.product_id}: {result.action} "
                f"(product={result.stripe_product_id}, price={result.stripe_price_id})"
            )
        return 0
    except CookieShopError as e:
        logger.error(f"[CLI] {args.command} failed for product {args.product_id}: {e}")
        return 1
    finally:
        session.close()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Cats and Cookies Operations CLI")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    sync_parser = subparsers.add_parser("run-sync", help="Sync products to Stripe")
    sync_parser.add_argument("--channel", choices=list(CHANNELS), default="products")
    sync_parser.add_argument("--force", action="store_true", help="Push local name/description to Stripe")
    sync_parser.add_argument("--skip-existing", action="store_true", help="Skip products already linked to Stripe")

    product_parser = subparsers.add_parser("sync-product", help="Sync a single product")
    product_parser.add_argument("product_id", type=int)
    product_parser.add_argument("--force", action="store_true")

    archive_parser = subparsers.add_parser("archive-product", help="Archive a product on Stripe")
    archive_parser.add_argument("product_id", type=int)

    args = parser.parse_args(argv)
    if args.command == "run-sync":
        return run_sync_command(args)
    if args.command in ("sync-product", "archive-product"):
        return run_product_command(args)

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
