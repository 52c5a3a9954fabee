"""
UART SMS Gateway - REST API
Flask + flask-restx application with bearer-token authentication

Licensed under Apache License 2.0
"""

import hmac
import logging

from flask import Flask, jsonify
from flask_httpauth import HTTPTokenAuth
from flask_restx import Api, Resource, fields, reqparse

from . import __version__
from .const import PROPERTY_NOTIFICATION_CHANNELS
from .errors import GatewayError, NotConnectedError, NotifyError
from .scheduler import TaskValidationError

logger = logging.getLogger(__name__)


def create_app(serial_service, message_store, property_store, notifier, scheduler, api_token: str,
               version: str = __version__) -> Flask:
    """Build the Flask app around already constructed gateway services"""
    app = Flask(__name__)
    app.config['RESTX_MASK_SWAGGER'] = False
    app.config['RESTX_ERROR_404_HELP'] = False

    @app.route('/health')
    def health():
        port_name, connected = serial_service.connection_info()
        return jsonify({'status': 'ok', 'serial': {'portName': port_name, 'connected': connected}})

    api = Api(
        app,
        version=version,
        title='UART SMS Gateway API',
        description='REST API for sending SMS and reading messages through a UART cellular modem',
        doc='/docs/',
        prefix='/api',
        authorizations={
            'bearerAuth': {
                'type': 'apiKey',
                'in': 'header',
                'name': 'Authorization',
                'description': 'Bearer <api_token>'
            }
        },
        security='bearerAuth'
    )

    auth = HTTPTokenAuth(scheme='Bearer')

    @auth.verify_token
    def verify(token):
        if not token:
            return None
        if hmac.compare_digest(token.encode('utf-8'), api_token.encode('utf-8')):
            return 'api'
        return None

    class AuthResource(Resource):
        method_decorators = [auth.login_required]

    @api.errorhandler(NotConnectedError)
    def handle_not_connected(error):
        logger.warning(f"⚠️ API request failed: {error}")
        return {'message': 'Serial port not connected'}, 503

    @api.errorhandler(TaskValidationError)
    def handle_validation(error):
        return {'message': str(error)}, 400

    @api.errorhandler(GatewayError)
    def handle_gateway_error(error):
        logger.error(f"❌ API request failed: {error}")
        return {'message': 'Gateway error'}, 500

    # API Models for Swagger documentation
    sms_model = api.model('SMS', {
        'to': fields.String(required=True, description='Recipient phone number', example='+8613800138000'),
        'content': fields.String(required=True, description='SMS message text', example='Hello')
    })

    send_response = api.model('Send Response', {
        'id': fields.String(description='Message id, echoed by the device as request_id'),
        'message': fields.String(description='Response message', example='SMS sent to device')
    })

    message_response = api.model('Message Response', {
        'message': fields.String(description='Response message')
    })

    cellular_model = api.model('Cellular', {
        'enabled': fields.Boolean(required=True, description='Enable (true) or disable (false) the radio')
    })

    mobile_response = api.model('Mobile Info', {
        'is_registered': fields.Boolean, 'is_roaming': fields.Boolean, 'iccid': fields.String,
        'signal_desc': fields.String, 'signal_level': fields.Integer, 'sim_ready': fields.Boolean,
        'rssi': fields.Integer, 'csq': fields.Integer, 'rsrp': fields.Integer, 'rsrq': fields.Float,
        'imsi': fields.String, 'number': fields.String, 'operator': fields.String, 'uptime': fields.Integer
    })

    status_response = api.model('Device Status', {
        'cellular_enabled': fields.Boolean, 'type': fields.String, 'version': fields.String,
        'mobile': fields.Nested(mobile_response), 'timestamp': fields.Integer, 'mem_kb': fields.Integer,
        'port_name': fields.String(description='Serial port in use'),
        'connected': fields.Boolean(description='Serial connection state')
    })

    text_message = api.model('Text Message', {
        'id': fields.String, 'from': fields.String, 'to': fields.String, 'content': fields.String,
        'type': fields.String(enum=['incoming', 'outgoing']),
        'status': fields.String(enum=['received', 'sending', 'sent', 'failed']),
        'timestamp': fields.Integer, 'createdAt': fields.Integer, 'updatedAt': fields.Integer
    })

    task_model = api.model('Scheduled Task', {
        'id': fields.String(readonly=True),
        'name': fields.String(required=True, example='Keep SIM alive'),
        'enabled': fields.Boolean(default=True),
        'intervalDays': fields.Integer(default=1, min=1),
        'phoneNumber': fields.String(required=True, example='10086'),
        'content': fields.String(required=True, example='CXLL'),
        'createdAt': fields.Integer(readonly=True), 'updatedAt': fields.Integer(readonly=True),
        'lastRunAt': fields.Integer(readonly=True), 'lastRunStatus': fields.String(readonly=True),
        'lastMessageId': fields.String(readonly=True)
    })

    property_model = api.model('Property', {
        'name': fields.String(required=False),
        'value': fields.Raw(required=True, description='Any JSON value')
    })

    list_parser = reqparse.RequestParser()
    list_parser.add_argument('page', type=int, default=1, location='args')
    list_parser.add_argument('pageSize', type=int, default=20, location='args')
    list_parser.add_argument('type', type=str, default='', location='args')
    list_parser.add_argument('status', type=str, default='', location='args')
    list_parser.add_argument('keyword', type=str, default='', location='args')

    # API Namespaces
    ns_system = api.namespace('version', description='Gateway information')
    ns_serial = api.namespace('serial', description='Device control over the serial link')
    ns_messages = api.namespace('messages', description='Stored SMS and call records')
    ns_tasks = api.namespace('scheduled-tasks', description='Recurring SMS tasks')
    ns_properties = api.namespace('properties', description='Generic JSON settings')
    ns_notifications = api.namespace('notifications', description='Notification channels')

    @ns_system.route('')
    class Version(AuthResource):
        def get(self):
            """Gateway version"""
            return {'version': version}

    @ns_serial.route('/sms')
    class SendSms(AuthResource):
        @ns_serial.expect(sms_model, validate=True)
        @ns_serial.marshal_with(send_response, code=200)
        def post(self):
            """Send an SMS through the device"""
            data = api.payload
            to = (data.get('to') or '').strip()
            content = data.get('content') or ''
            if not to or not content:
                api.abort(400, "'to' and 'content' are required")
            msg_id = serial_service.send_sms(to, content)
            return {'id': msg_id, 'message': 'SMS sent to device'}

    @ns_serial.route('/status')
    class SerialStatus(AuthResource):
        @ns_serial.marshal_with(status_response)
        def get(self):
            """Last known device status with the live connection state"""
            return serial_service.get_status().to_dict()

    @ns_serial.route('/reset')
    class ResetStack(AuthResource):
        @ns_serial.marshal_with(message_response)
        def post(self):
            """Reset the modem protocol stack"""
            serial_service.reset_stack()
            return {'message': 'Reset command sent'}

    @ns_serial.route('/reboot')
    class RebootMcu(AuthResource):
        @ns_serial.marshal_with(message_response)
        def post(self):
            """Reboot the device microcontroller"""
            serial_service.reboot_mcu()
            return {'message': 'Reboot command sent'}

    @ns_serial.route('/cellular')
    class Cellular(AuthResource):
        @ns_serial.expect(cellular_model, validate=True)
        @ns_serial.marshal_with(message_response)
        def post(self):
            """Enable or disable the cellular radio"""
            enabled = bool(api.payload.get('enabled'))
            serial_service.set_cellular(enabled)
            return {'message': f"Cellular {'enable' if enabled else 'disable'} command sent"}

    @ns_messages.route('')
    class MessageList(AuthResource):
        @ns_messages.expect(list_parser)
        def get(self):
            """Paged message list, newest first"""
            args = list_parser.parse_args()
            items, total = message_store.list(
                page=args['page'], page_size=args['pageSize'],
                type=args['type'], status=args['status'], keyword=args['keyword'])
            return {
                'items': [m.to_dict() for m in items],
                'total': total,
                'page': max(args['page'], 1),
                'pageSize': max(args['pageSize'], 1),
            }

        @ns_messages.marshal_with(message_response)
        def delete(self):
            """Delete all messages"""
            message_store.clear()
            return {'message': 'All messages deleted'}

    @ns_messages.route('/stats')
    class MessageStats(AuthResource):
        def get(self):
            """Message counters"""
            return message_store.stats()

    @ns_messages.route('/conversations')
    class Conversations(AuthResource):
        def get(self):
            """One summary per peer number"""
            return message_store.conversations()

    @ns_messages.route('/conversations/<string:peer>')
    class Conversation(AuthResource):
        @ns_messages.marshal_list_with(text_message)
        def get(self, peer):
            """Messages exchanged with one peer, oldest first"""
            return [m.to_dict() for m in message_store.conversation_messages(peer)]

        def delete(self, peer):
            """Delete a conversation"""
            deleted = message_store.delete_conversation(peer)
            return {'message': f'{deleted} messages deleted', 'deleted': deleted}

    @ns_messages.route('/<string:msg_id>')
    class MessageItem(AuthResource):
        @ns_messages.marshal_with(text_message)
        def get(self, msg_id):
            """One message"""
            msg = message_store.get(msg_id)
            if msg is None:
                api.abort(404, 'Message not found')
            return msg.to_dict()

        @ns_messages.marshal_with(message_response)
        def delete(self, msg_id):
            """Delete one message"""
            if not message_store.delete(msg_id):
                api.abort(404, 'Message not found')
            return {'message': 'Message deleted'}

    @ns_tasks.route('')
    class TaskList(AuthResource):
        @ns_tasks.marshal_list_with(task_model)
        def get(self):
            """All scheduled tasks"""
            return [t.to_dict() for t in scheduler.list_tasks()]

        @ns_tasks.expect(task_model)
        @ns_tasks.marshal_with(task_model, code=201)
        def post(self):
            """Create a scheduled task"""
            task = scheduler.create_task(api.payload or {})
            return task.to_dict(), 201

    @ns_tasks.route('/<string:task_id>')
    class TaskItem(AuthResource):
        @ns_tasks.marshal_with(task_model)
        def get(self, task_id):
            """One scheduled task"""
            task = scheduler.get_task(task_id)
            if task is None:
                api.abort(404, 'Scheduled task not found')
            return task.to_dict()

        @ns_tasks.expect(task_model)
        @ns_tasks.marshal_with(task_model)
        def put(self, task_id):
            """Update a scheduled task"""
            task = scheduler.update_task(task_id, api.payload or {})
            if task is None:
                api.abort(404, 'Scheduled task not found')
            return task.to_dict()

        @ns_tasks.marshal_with(message_response)
        def delete(self, task_id):
            """Delete a scheduled task"""
            if not scheduler.delete_task(task_id):
                api.abort(404, 'Scheduled task not found')
            return {'message': 'Scheduled task deleted'}

    @ns_tasks.route('/<string:task_id>/run')
    class TaskRun(AuthResource):
        @ns_tasks.marshal_with(task_model)
        def post(self, task_id):
            """Run a scheduled task now"""
            task = scheduler.run_now(task_id)
            if task is None:
                api.abort(404, 'Scheduled task not found')
            return task.to_dict()

    @ns_properties.route('/<string:prop_id>')
    class PropertyItem(AuthResource):
        def get(self, prop_id):
            """Read a property"""
            return {'id': prop_id, 'name': prop_id, 'value': property_store.get(prop_id)}

        @ns_properties.expect(property_model)
        @ns_properties.marshal_with(message_response)
        def put(self, prop_id):
            """Replace a property value"""
            data = api.payload
            if not isinstance(data, dict) or 'value' not in data:
                api.abort(400, "'value' is required")
            if prop_id == PROPERTY_NOTIFICATION_CHANNELS and not isinstance(data['value'], list):
                api.abort(400, 'notification_channels must be a list')
            property_store.set(prop_id, data['value'])
            return {'message': 'Property saved'}

    @ns_notifications.route('/<string:channel_type>/test')
    class NotificationTest(AuthResource):
        @ns_notifications.marshal_with(message_response)
        def post(self, channel_type):
            """Send a test alert through one configured channel"""
            channel = next((c for c in notifier.channels() if c.get('type') == channel_type), None)
            if channel is None:
                api.abort(404, 'Notification channel not configured')
            if not channel.get('enabled'):
                api.abort(400, 'Notification channel is disabled')
            try:
                notifier.send_test(channel_type)
            except NotifyError as e:
                logger.error(f"❌ Test notification failed: {e}")
                api.abort(500, 'Failed to send test notification')
            return {'message': 'Test notification sent'}

    return app
