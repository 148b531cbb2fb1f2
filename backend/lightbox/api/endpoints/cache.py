from fastapi import APIRouter, Depends

from lightbox.api.deps import Principal, get_runtime, require_admin
from lightbox.services.runtime import Runtime

router = APIRouter()


@router.get("")
def cache_status(admin: Principal = Depends(require_admin), runtime: Runtime = Depends(get_runtime)):
    settings = runtime.settings
    return {
        **runtime.cache.status(),
        "max_size_bytes": settings.TRANSFORM_CACHE_MAX_SIZE_BYTES,
        "max_age_days": settings.TRANSFORM_CACHE_MAX_AGE_DAYS,
        "gc_enabled": settings.TRANSFORM_CACHE_GC_ENABLED,
        "gc_interval_minutes": settings.TRANSFORM_CACHE_GC_INTERVAL_MINUTES,
        "clear_permanent": settings.TRANSFORM_CACHE_CLEAR_PERMANENT,
    }


@router.post("/gc")
def run_cache_gc(admin: Principal = Depends(require_admin), runtime: Runtime = Depends(get_runtime)):
    return runtime.gc.collect().to_dict()


@router.delete("")
def clear_cache(admin: Principal = Depends(require_admin), runtime: Runtime = Depends(get_runtime)):
    removed = runtime.cache.clear()
    return {"removed_files": removed["files"], "removed_bytes": removed["bytes"]}
