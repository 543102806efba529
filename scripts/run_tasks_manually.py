# run_tasks_manually.py
import asyncio
import logging
import sys
import os

# Lets the script run from the repository root without installing the package
sys.path.append(os.getcwd())

from storefront.tasks_registry import TASKS


async def main(task_names):
    """
    Runs the selected tasks (all of them by default) one after another.
    """
    print("--- Manual Task Runner ---")
    selected = task_names or list(TASKS)
    unknown = [name for name in selected if name not in TASKS]
    if unknown:
        print(f"Unknown task(s): {', '.join(unknown)}. Available: {', '.join(TASKS)}")
        return

    for index, name in enumerate(selected, start=1):
        print(f"\n[{index}/{len(selected)}] Running: {name}...")
        result = await TASKS[name]["function"]()
        print(f"Done. {result}")

    print("\n--- All tasks completed! ---")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, stream=sys.stdout, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    try:
        asyncio.run(main(sys.argv[1:]))
    except KeyboardInterrupt:
        print("\nScript interrupted by user.")
