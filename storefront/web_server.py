"""
Servidor Web Flask da Loja
==========================
API JSON consumida pela vitrine: login/cadastro, catálogo, checkout e painel admin
"""

from dataclasses import asdict
from decimal import Decimal
import logging
from typing import Any, Dict, List

from flask import Flask, jsonify, request, send_from_directory
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from storefront.errors import ConflictError, StoreError, ValidationError
from storefront.models import Order, Product
from storefront.services import CatalogStore, CredentialStore, OrderService
from storefront.uploads import UploadStore

logger = logging.getLogger(__name__)

# O cliente da vitrine não envia forma de pagamento
DEFAULT_PAYMENT_METHOD = "Cash on Delivery"


def product_to_dict(product: Product) -> Dict[str, Any]:
    data = asdict(product)
    data["price"] = float(product.price)
    return data


def order_to_dict(order: Order) -> Dict[str, Any]:
    return {
        'id': order.id,
        'email': order.email,
        'total': float(order.total),
        'date': order.created_at,
        'status': order.status,
        'items': [
            {
                'product_id': item.product_id,
                'name': item.product_name,
                'qty': item.quantity,
                'price': float(item.price_at_time),
            }
            for item in order.items
        ],
        'payment': {
            'method': order.payment.method,
            'status': order.payment.status,
            'amount': float(order.payment.amount),
        } if order.payment else None,
    }


def _as_int(value: Any, label: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{label} inválido")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{label} inválido")


class WebServer:
    """Servidor web Flask da loja"""

    def __init__(self, credentials: CredentialStore, catalog: CatalogStore, orders: OrderService,
                 uploads: UploadStore, host: str = '0.0.0.0', port: int = 3000):
        """
        Inicializa o servidor web

        Args:
            credentials: serviço de login/cadastro
            catalog: catálogo de produtos
            orders: serviço de pedidos
            uploads: armazenamento das imagens enviadas
            port: Porta para o servidor (padrão: 3000)
        """
        self.credentials = credentials
        self.catalog = catalog
        self.orders = orders
        self.uploads = uploads
        self.host = host
        self.port = port
        self.app = Flask(__name__)
        CORS(self.app)

        self._setup_error_handlers()
        self._setup_routes()

    def _setup_error_handlers(self):
        @self.app.errorhandler(StoreError)
        def handle_store_error(e: StoreError):
            if e.status_code >= 500:
                logger.error(f"Erro no banco em {request.path}: {e.message}")
            return jsonify({'success': False, 'error': e.message}), e.status_code

        @self.app.errorhandler(Exception)
        def handle_unexpected(e: Exception):
            if isinstance(e, HTTPException):
                return e
            logger.exception(f"Erro inesperado em {request.path}")
            return jsonify({'success': False, 'error': 'Erro interno do servidor'}), 500

    def _saved_images(self) -> List[str]:
        urls = []
        for upload in request.files.getlist('images'):
            data = upload.read()
            if data:
                urls.append(self.uploads.save(data, upload.filename))
        return urls

    def _setup_routes(self):
        """Configura as rotas da API"""

        @self.app.route('/uploads/<path:filename>')
        def serve_upload(filename):
            return send_from_directory(self.uploads.upload_dir, filename)

        # --- Autenticação ---

        @self.app.route('/api/login', methods=['POST'])
        def login():
            data = request.get_json(silent=True) or {}
            user = self.credentials.authenticate(data.get('email'), data.get('password'))
            return jsonify({'success': True, 'user': user.public()})

        @self.app.route('/api/signup', methods=['POST'])
        def signup():
            data = request.get_json(silent=True) or {}
            try:
                self.credentials.register(data.get('name'), data.get('email'), data.get('password'))
            except ConflictError as e:
                # A vitrine espera 400 para e-mail duplicado
                return jsonify({'success': False, 'error': e.message}), 400
            return jsonify({'success': True})

        # --- Catálogo ---

        @self.app.route('/api/products', methods=['GET'])
        def list_products():
            """Retorna lista de todos os produtos com suas imagens"""
            return jsonify([product_to_dict(p) for p in self.catalog.list()])

        @self.app.route('/api/products', methods=['POST'])
        def create_product():
            form = request.form
            images = self._saved_images()
            product_id = self.catalog.create(
                name=form.get('name'),
                price=form.get('price'),
                description=form.get('desc', form.get('description')),
                category=form.get('category'),
                primary_image_url=images[0] if images else None,
                additional_image_urls=images[1:],
            )
            return jsonify({'success': True, 'id': product_id})

        @self.app.route('/api/products/<int:product_id>', methods=['PUT'])
        def update_product(product_id):
            form = request.form if request.form else (request.get_json(silent=True) or {})
            fields: Dict[str, Any] = {}
            for key in ('name', 'price', 'category'):
                if key in form:
                    fields[key] = form.get(key)
            if 'desc' in form or 'description' in form:
                fields['description'] = form.get('desc', form.get('description'))

            if not self.catalog.update(product_id, fields, self._saved_images() or None):
                return jsonify({'success': False, 'error': 'Produto não encontrado'}), 404
            return jsonify({'success': True})

        @self.app.route('/api/products/<int:product_id>', methods=['DELETE'])
        def delete_product(product_id):
            if not self.catalog.delete(product_id):
                return jsonify({'success': False, 'error': 'Produto não encontrado'}), 404
            return jsonify({'success': True})

        # --- Pedidos ---

        @self.app.route('/api/orders', methods=['POST'])
        def place_order():
            data = request.get_json(silent=True) or {}
            raw_items = data.get('items')
            if not isinstance(raw_items, list):
                raise ValidationError('Campo "items" é obrigatório')

            line_items = []
            for item in raw_items:
                if not isinstance(item, dict):
                    raise ValidationError('Item inválido')
                line_items.append({
                    'product_id': _as_int(item.get('productId', item.get('id')), 'Produto'),
                    'quantity': _as_int(item.get('qty', item.get('quantity')), 'Quantidade'),
                })

            method = data.get('paymentMethod') or data.get('payment_method') or DEFAULT_PAYMENT_METHOD
            order_id = self.orders.place_order(data.get('email'), line_items, method)

            client_total = data.get('total')
            if client_total is not None:
                order_total = self.orders.get_order(order_id).total
                try:
                    differs = Decimal(str(client_total)) != order_total
                except ArithmeticError:
                    differs = True
                if differs:
                    logger.warning(f"Pedido #{order_id}: total do cliente {client_total} != {order_total}")

            return jsonify({'success': True, 'orderId': order_id})

        @self.app.route('/api/orders', methods=['GET'])
        def list_orders():
            return jsonify([order_to_dict(o) for o in self.orders.list_orders()])

        @self.app.route('/api/orders/<int:order_id>', methods=['GET'])
        def get_order(order_id):
            return jsonify(order_to_dict(self.orders.get_order(order_id)))

        @self.app.route('/api/orders/<int:order_id>/status', methods=['PUT'])
        def update_order_status(order_id):
            data = request.get_json(silent=True) or {}
            if not data.get('status'):
                raise ValidationError('Campo "status" é obrigatório')
            order = self.orders.update_status(order_id, data['status'])
            return jsonify({'success': True, 'order': order_to_dict(order)})

        @self.app.route('/api/payments', methods=['GET'])
        def list_payments():
            payments = []
            for row in self.orders.list_payments():
                row = dict(row)
                row['amount'] = float(row['amount'])
                row['order_total'] = float(row['order_total'])
                payments.append(row)
            return jsonify(payments)

    def run(self, debug: bool = False):
        """
        Inicia o servidor Flask

        Args:
            debug: Modo debug (padrão: False)
        """
        logger.info("=" * 60)
        logger.info(f"🌐 SERVIDOR WEB INICIADO em http://{self.host}:{self.port}")
        logger.info("=" * 60)

        # threaded=True: cada checkout roda em sua própria thread
        self.app.run(
            host=self.host,
            port=self.port,
            debug=debug,
            threaded=True,
            use_reloader=False
        )
