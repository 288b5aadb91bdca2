import logging
import os
import time
from typing import List

import cloudinary
import cloudinary.uploader
from cloudinary.exceptions import Error as CloudinaryError
from dotenv import load_dotenv
from fastapi import UploadFile

from bookshare.exceptions import ImageUploadError, InvalidInputError

load_dotenv()
logger = logging.getLogger(__name__)

UPLOAD_DIR = os.getenv("UPLOAD_DIR", "uploads")
IMAGE_FOLDER = "book_sharing/books"
MAX_IMAGES = 5


def stage_upload(upload: UploadFile) -> str:
    """Copy an incoming upload to the local staging directory."""
    os.makedirs(UPLOAD_DIR, exist_ok=True)
    filename = os.path.basename(upload.filename or "image")
    path = os.path.join(UPLOAD_DIR, f"{int(time.time() * 1000)}-{filename}")
    with open(path, "wb") as staged:
        staged.write(upload.file.read())
    return path


def configure_cloudinary():
    cloud_name = os.getenv("CLOUDINARY_CLOUD_NAME")
    api_key = os.getenv("CLOUDINARY_API_KEY")
    api_secret = os.getenv("CLOUDINARY_API_SECRET")
    if not (cloud_name and api_key and api_secret):
        raise ImageUploadError("Image hosting is not configured")
    cloudinary.config(
        cloud_name=cloud_name, api_key=api_key, api_secret=api_secret, secure=True
    )


def upload_image(file_path: str, folder: str = IMAGE_FOLDER) -> str:
    """Send a staged file to the hosted image store and return its public URL."""
    configure_cloudinary()
    try:
        result = cloudinary.uploader.upload(file_path, folder=folder)
        return result["secure_url"]
    except (CloudinaryError, KeyError) as e:
        logger.error(f"Error uploading image to Cloudinary: {e}")
        raise ImageUploadError(str(e))


def store_book_images(uploads: List[UploadFile]) -> List[str]:
    uploads = [upload for upload in uploads or [] if upload.filename]
    if len(uploads) > MAX_IMAGES:
        raise InvalidInputError(f"At most {MAX_IMAGES} images can be uploaded")
    urls = []
    for upload in uploads:
        path = stage_upload(upload)
        try:
            urls.append(upload_image(path))
        finally:
            os.remove(path)
    return urls
