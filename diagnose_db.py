#!/usr/bin/env python3
"""
Diagnostic script: database connectivity and recommendation readiness
"""
import argparse
import asyncio
from dotenv import load_dotenv

load_dotenv()


async def diagnose(shop_id=None):
    # Import after dotenv loads
    from database import build_engine, build_session_factory, check_db_health, close_db
    from services.storage import StorageService

    engine = build_engine()
    storage = StorageService(build_session_factory(engine))

    print("=" * 60)
    print("Recommendation Engine Diagnostics")
    print("=" * 60)
    print()

    try:
        print("1. Testing database connection...")
        health = await check_db_health(engine)
        if health["status"] != "healthy":
            print(f"❌ Connection failed: {health.get('error')}")
            return 1
        print(f"✅ Connected ({health['latency_ms']}ms)")
        print()

        status = await storage.system_status(shop_id)

        print("2. Products" + (f" (shop {shop_id})" if shop_id else ""))
        products = status["products"]
        print(f"   Total products: {products['total']}")
        print(f"   With embeddings: {products['with_embeddings']} ({products['embedding_coverage'] * 100:.1f}%)")
        print()

        print("3. Tag graph")
        print(f"   Tags in graph: {status['tag_graph']['tags']}")
        for tag, children in status["tag_graph"]["sample"].items():
            print(f"     - {tag} -> {', '.join(children[:3])}")
        print()

        print("4. Recent precompute runs")
        if not status["recent_runs"]:
            print("   No precomputation runs found")
        for run in status["recent_runs"]:
            print(f"   - {run['shop_id']}: {run['status']} ({run['product_count']} products) started {run['started_at']}")
        print()

        print("=" * 60)
        if status["ready"]:
            print("✅ System ready for recommendations")
        else:
            for issue in status["issues"]:
                print(f"⚠️  {issue}")
        print("=" * 60)
        return 0 if status["ready"] else 1
    finally:
        await close_db(engine)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--shop-id", default=None)
    args = parser.parse_args()
    raise SystemExit(asyncio.run(diagnose(args.shop_id)))
