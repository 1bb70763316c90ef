"""
Script to verify compound stock against the stock movement ledger

For every compound (or a single one) the movement chain in stock_movements is
replayed and compared with compounds.stock_value. Nothing is modified; a
non-zero exit code means at least one discrepancy was found.

Usage: python verify_stock_ledger.py [--compound-id ID]
"""

import asyncio
import sys
import os
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import ConnectionFailure
from dotenv import load_dotenv
from pathlib import Path
import argparse

from stock_ledger import StockLedger
from weighing_errors import WeighingError

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# MongoDB connection settings from environment
MONGO_URI = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
DATABASE_NAME = os.environ.get('DB_NAME', 'lab_weighing')


async def verify_ledger(db, compound_id=None):
    """Audit compounds; returns the list of inconsistent LedgerAudit reports"""
    ledger = StockLedger(db)

    if compound_id:
        compound_ids = [compound_id]
    else:
        compounds = await db.compounds.find({}, {"_id": 0, "id": 1, "name": 1}).to_list(None)
        compound_ids = [c["id"] for c in compounds]

    print(f"\n📦 Auditing {len(compound_ids)} compound(s)\n")

    inconsistent = []
    for cid in compound_ids:
        try:
            report = await ledger.audit(cid)
        except WeighingError as e:
            print(f"❌ {cid}: {e.message}")
            inconsistent.append(None)
            continue

        if report.is_consistent:
            print(f"✓ {cid}: {report.current_stock_mg:g} mg, {report.movements_checked} movement(s), in sync")
        else:
            inconsistent.append(report)
            print(f"⚠️  DISCREPANCY: {cid} (version {report.ledger_version})")
            for issue in report.issues:
                print(f"   - {issue}")

    return inconsistent


async def main(compound_id=None):
    try:
        client = AsyncIOMotorClient(MONGO_URI, serverSelectionTimeoutMS=5000)
        db = client[DATABASE_NAME]

        await client.admin.command('ping')
        print("✓ Connected to MongoDB")

        inconsistent = await verify_ledger(db, compound_id)

        print("\n" + "="*80)
        print("LEDGER VERIFICATION SUMMARY")
        print("="*80)
        print(f"Compounds with discrepancies: {len(inconsistent)}")
        print("="*80)

        client.close()
        return not inconsistent

    except ConnectionFailure:
        print("❌ Error: Could not connect to MongoDB")
        print(f"   Make sure MongoDB is running at {MONGO_URI}")
        return False


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description='Verify compound stock against the stock movement ledger')
    parser.add_argument('--compound-id', help='Audit a single compound')
    args = parser.parse_args()

    success = asyncio.run(main(args.compound_id))
    sys.exit(0 if success else 1)
