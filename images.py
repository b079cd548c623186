import io
import os
import uuid

from PIL import Image, UnidentifiedImageError

IMAGE_SIZES = {
    'full': (800, 600),
    'card': (400, 300),
    'thumb': (120, 90)
}


class ImageProcessingError(Exception):
    pass


def process_and_save_image(image_data, upload_folder):
    """Обработка и сохранение изображения товара.

    Сохраняет JPEG в каждом размере из IMAGE_SIZES в
    <upload_folder>/<size>/<uuid>.jpg и возвращает имя файла.
    """
    try:
        image = Image.open(io.BytesIO(image_data))
        image.load()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as e:
        raise ImageProcessingError(f"Не удалось прочитать изображение: {e}")

    # JPEG не поддерживает прозрачность и палитру
    if image.mode != 'RGB':
        image = image.convert('RGB')

    filename = f"{uuid.uuid4().hex}.jpg"
    for size_name, (width, height) in IMAGE_SIZES.items():
        os.makedirs(os.path.join(upload_folder, size_name), exist_ok=True)

        resized_image = image.copy()
        resized_image.thumbnail((width, height), Image.Resampling.LANCZOS)
        resized_image.save(os.path.join(upload_folder, size_name, filename), 'JPEG', quality=90)

    return filename


def image_urls(filename):
    """URL всех размеров изображения"""
    return {size_name: f'/media/products/{size_name}/{filename}' for size_name in IMAGE_SIZES}
