from PIL import Image, ImageDraw, ImageFont
import io
import os
import textwrap
from decimal import Decimal

FEE_ROWS = [
    ("platform_fee", "Platform Fee"),
    ("brokerage", "Brokerage"),
    ("gst", "GST"),
    ("stamp_duty", "Stamp Duty"),
    ("dp_charges", "DP Charges"),
    ("esign", "eSign Charges"),
]

def money(value) -> str:
    return f"Rs. {Decimal(str(value or 0)):,.2f}"

def generate_receipt_image(snapshot: dict) -> io.BytesIO:
    """Генерує PNG-зображення з квитанцією замовлення (суми, комісії, час авторизації)."""
    width, height = 750, 1000
    # Темний преміальний фон
    img = Image.new('RGB', (width, height), color=(24, 24, 27))
    draw = ImageDraw.Draw(img)

    try:
        font_path_reg = os.path.join("assets", "Roboto-Regular.ttf")
        font_path_bold = os.path.join("assets", "Roboto-Bold.ttf")

        font_title = ImageFont.truetype(font_path_bold, 42)
        font_subtitle = ImageFont.truetype(font_path_reg, 32)
        font_text = ImageFont.truetype(font_path_reg, 26)
        font_bold = ImageFont.truetype(font_path_bold, 28)
        font_price = ImageFont.truetype(font_path_bold, 52)
    except IOError:
        # Fallback якщо шрифти не знайдено
        font_title = ImageFont.load_default()
        font_subtitle = ImageFont.load_default()
        font_text = ImageFont.load_default()
        font_bold = ImageFont.load_default()
        font_price = ImageFont.load_default()

    # Заголовок
    order_num = snapshot.get('user_order_num', '')
    title_text = f"Invest APP: Order #{order_num}" if order_num else "Invest APP: Order"
    draw.text((50, 50), title_text, fill=(255, 255, 255), font=font_title)
    draw.line((50, 110, 700, 110), fill=(100, 100, 100), width=2)

    y = 140
    wrapped_name = textwrap.wrap(snapshot.get('company_name', 'Unknown'), width=32)
    draw.text((50, y), "Company:", fill=(150, 150, 150), font=font_text)
    for line in wrapped_name:
        draw.text((250, y), line, fill=(255, 255, 255), font=font_bold)
        y += 40

    y += 10
    draw.text((50, y), "Quantity:", fill=(150, 150, 150), font=font_text)
    draw.text((250, y), f"{snapshot.get('quantity', 0)} @ {money(snapshot.get('unit_price'))}", fill=(255, 255, 255), font=font_bold)

    y += 50
    draw.text((50, y), "Order value:", fill=(150, 150, 150), font=font_text)
    draw.text((250, y), money(snapshot.get('order_value')), fill=(255, 255, 255), font=font_bold)

    y += 50
    draw.line((50, y, 700, y), fill=(100, 100, 100), width=1)

    # Комісії
    y += 30
    draw.text((50, y), "Fees & taxes:", fill=(200, 200, 200), font=font_subtitle)

    y += 60
    line_height = 45
    fees = snapshot.get('fees', {})
    for key, label in FEE_ROWS:
        if key in fees:
            draw.text((50, y), f"{label}:", fill=(150, 150, 150), font=font_text)
            # Суму вирівнюємо по правій стороні
            draw.text((480, y), money(fees[key]), fill=(255, 255, 255), font=font_bold)
            y += line_height

    if Decimal(str(snapshot.get('surcharge', 0))) > 0:
        draw.text((50, y), "Card surcharge:", fill=(150, 150, 150), font=font_text)
        draw.text((480, y), money(snapshot['surcharge']), fill=(255, 80, 80), font=font_bold)
        y += line_height

    y -= 15
    draw.line((50, y + 30, 700, y + 30), fill=(100, 100, 100), width=2)

    y += 60
    draw.text((50, y), "AMOUNT PAID", fill=(200, 200, 200), font=font_subtitle)

    y += 60
    draw.text((50, y), money(snapshot.get('amount_due')), fill=(16, 185, 129), font=font_price)

    y += 90
    draw.text((50, y), f"Authorized at: {snapshot.get('authorized_at', '')}", fill=(150, 150, 150), font=font_text)
    if snapshot.get('backend_ref'):
        y += 40
        draw.text((50, y), f"Reference: {snapshot['backend_ref']}", fill=(150, 150, 150), font=font_text)

    bio = io.BytesIO()
    img.save(bio, format='PNG')
    bio.seek(0)
    return bio
