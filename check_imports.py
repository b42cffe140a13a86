import importlib
modules = [
    'batchkeeper.lib.database',
    'batchkeeper.lib.db_lock',
    'batchkeeper.lib.order',
    'batchkeeper.services.import_service',
    'batchkeeper.services.task_processor',
    'batchkeeper.cli',
]
for m in modules:
    try:
        importlib.import_module(m)
        print('import ok:', m)
    except Exception as e:
        print('import FAILED:', m, e)
        raise
print('done')
