from typing import List

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile

from cookieshop.api.deps import get_storage_service, raise_http_error
from cookieshop.exceptions import CookieShopError
from cookieshop.services.storage_service import StorageService

router = APIRouter()


@router.post("")
async def upload_images(
    files: List[UploadFile] = File(default=[]),
    storage: StorageService = Depends(get_storage_service),
):
    if not files:
        raise HTTPException(status_code=400, detail="No files provided")

    # 전부 검증한 뒤 업로드 (일부만 올라가는 상황 방지)
    contents = []
    for f in files:
        content = await f.read()
        try:
            storage.validate(content, f.content_type)
        except CookieShopError as e:
            raise_http_error(e)
        contents.append((f, content))

    urls = []
    for f, content in contents:
        try:
            urls.append(storage.upload_image(content, f.content_type, f.filename))
        except CookieShopError as e:
            raise_http_error(e)

    return {"success": True, "urls": urls, "message": f"{len(urls)} file(s) uploaded successfully"}
