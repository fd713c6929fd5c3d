#!/usr/bin/env python3
"""
Example demonstrating the keyval operations on the default store.
"""

import asyncio
import os
import sys
import tempfile

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), 'src'))

import keyval


async def demonstrate_basic_operations():
    """Set, read and clear a value on the default store."""
    print("=== Basic Operations Demo ===\n")

    await keyval.set("hello", 1)
    print("   - Set hello=1")

    value = await keyval.get("hello")
    print(f"   - Get hello: {value}")

    await keyval.clear()
    print(f"   - Cleared, keys now: {await keyval.keys()}")


async def demonstrate_batches():
    """Write and read several keys in single transactions."""
    print("\n=== Batch Operations Demo ===\n")

    await keyval.set_many([("name", "Alice"), ("age", 30), ("prefs", {"theme": "dark"})])
    print("   - set_many name, age, prefs")

    print(f"   - get_many: {await keyval.get_many(['prefs', 'missing', 'name'])}")
    print(f"   - entries: {await keyval.entries()}")

    await keyval.update("age", lambda age: (age or 0) + 1)
    print(f"   - age after update: {await keyval.get('age')}")


async def demonstrate_custom_store(data_dir: str):
    """Use an explicitly created store instead of the default one."""
    print("\n=== Custom Store Demo ===\n")

    store = keyval.create_store("custom-db", "custom-store", data_dir=data_dir)
    try:
        await keyval.set("key", "value", store=store)
        async for key, value in keyval.iterate(store):
            print(f"   - {key!r}: {value!r}")
    finally:
        await store.close()


async def main():
    data_dir = tempfile.mkdtemp(prefix="keyval-example-")
    os.environ["KEYVAL_DATA_DIR"] = data_dir
    print(f"Database files in {data_dir}\n")

    try:
        await demonstrate_basic_operations()
        await demonstrate_batches()
        await demonstrate_custom_store(data_dir)
    finally:
        await (await keyval.get_default_store()).close()


if __name__ == "__main__":
    asyncio.run(main())
