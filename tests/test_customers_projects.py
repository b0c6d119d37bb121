class TestCustomers:
    def test_create_and_get(self, auth_client, make_customer):
        customer = make_customer(zip_code='99201')
        assert customer['company_name'] == 'Acme Holdings'
        resp = auth_client.get(f"/api/customers/{customer['id']}")
        assert resp.status_code == 200
        assert resp.get_json()['projects'] == []

    def test_validation(self, auth_client):
        resp = auth_client.post('/api/customers', json={'company_name': '', 'email': 'nope'})
        assert resp.status_code == 400
        details = resp.get_json()['details']
        assert 'Company name is required' in details
        assert 'Email is not a valid email address' in details

    def test_html_is_stripped(self, make_customer):
        assert make_customer(company_name='<b>Bold</b> Co')['company_name'] == 'Bold Co'

    def test_search(self, auth_client, make_customer):
        make_customer(company_name='Acme Holdings')
        make_customer(company_name='Riverbend Homes', email='tom@riverbend.example')
        found = auth_client.get('/api/customers?search=river').get_json()
        assert [c['company_name'] for c in found] == ['Riverbend Homes']
        assert found[0]['project_count'] == 0
        upper = auth_client.get('/api/customers?search=TOM@RIVER').get_json()
        assert [c['company_name'] for c in upper] == ['Riverbend Homes']

    def test_numeric_phone(self, auth_client):
        resp = auth_client.post('/api/customers', json={'company_name': 'Numbers Inc', 'phone': 5551234567})
        assert resp.status_code == 201
        assert str(resp.get_json()['phone']) == '5551234567'
        resp = auth_client.post('/api/customers', json={'company_name': 'Short Inc', 'phone': 12345})
        assert resp.status_code == 400

    def test_update(self, auth_client, make_customer):
        customer = make_customer()
        resp = auth_client.put(f"/api/customers/{customer['id']}", json={'city': 'Spokane'})
        assert resp.status_code == 200
        body = resp.get_json()
        assert body['city'] == 'Spokane'
        assert body['company_name'] == 'Acme Holdings'
        assert body['modified_at']

    def test_update_validates_merged_record(self, auth_client, make_customer):
        customer = make_customer()
        resp = auth_client.put(f"/api/customers/{customer['id']}", json={'zip_code': 'abc'})
        assert resp.status_code == 400

    def test_delete_blocked_by_projects(self, auth_client, make_project):
        project = make_project()
        resp = auth_client.delete(f"/api/customers/{project['customer_id']}")
        assert resp.status_code == 400
        assert 'project' in resp.get_json()['error']

    def test_delete(self, auth_client, make_customer):
        customer = make_customer()
        assert auth_client.delete(f"/api/customers/{customer['id']}").status_code == 200
        assert auth_client.get(f"/api/customers/{customer['id']}").status_code == 404


class TestProjects:
    def test_create_defaults(self, make_project):
        project = make_project()
        assert project['status'] == 'Planning'
        assert project['priority'] == 0
        assert project['company_name'] == 'Acme Holdings'

    def test_site_and_contact(self, auth_client, make_project):
        project = make_project(project_city='Spokane', project_state='WA', project_zip='99201',
                               project_contact_name='Sam Lee', project_contact_phone='509-555-0101',
                               project_contact_email='sam@site.example')
        assert project['project_city'] == 'Spokane'
        assert project['project_contact_email'] == 'sam@site.example'
        assert project['actual_completion_date'] is None

        url = f"/api/projects/{project['id']}"
        resp = auth_client.put(url, json={'actual_completion_date': '2025-09-30'})
        assert resp.get_json()['actual_completion_date'] == '2025-09-30'
        resp = auth_client.put(url, json={'project_contact_email': 'nope', 'project_contact_phone': '123',
                                          'project_zip': '9'})
        assert resp.status_code == 400
        assert set(resp.get_json()['details']) == {
            'Project contact email is not a valid email address',
            'Project contact phone is not a valid phone number',
            'Project ZIP code must be 12345 or 12345-6789',
        }

    def test_dates_must_be_ordered(self, auth_client, make_customer):
        customer = make_customer()
        resp = auth_client.post('/api/projects', json={
            'customer_id': customer['id'], 'project_name': 'Deck',
            'start_date': '2025-05-01', 'end_date': '2025-04-01',
        })
        assert resp.status_code == 400
        assert 'End date must be after start date' in resp.get_json()['details']

    def test_unknown_customer(self, auth_client):
        resp = auth_client.post('/api/projects', json={'customer_id': 999, 'project_name': 'Deck'})
        assert resp.status_code == 400

    def test_priority_insert_shifts_others(self, auth_client, make_customer, make_project):
        customer = make_customer()
        first = make_project(customer['id'], project_name='First', priority=1)
        second = make_project(customer['id'], project_name='Second', priority=1)
        first = auth_client.get(f"/api/projects/{first['id']}").get_json()
        assert second['priority'] == 1
        assert first['priority'] == 2
        listed = auth_client.get('/api/projects').get_json()
        assert [p['project_name'] for p in listed] == ['Second', 'First']

    def test_priority_free_slot_does_not_shift(self, auth_client, make_customer, make_project):
        customer = make_customer()
        first = make_project(customer['id'], project_name='First', priority=1)
        make_project(customer['id'], project_name='Second', priority=3)
        assert auth_client.get(f"/api/projects/{first['id']}").get_json()['priority'] == 1

    def test_update_priority(self, auth_client, make_customer, make_project):
        customer = make_customer()
        first = make_project(customer['id'], project_name='First', priority=1)
        second = make_project(customer['id'], project_name='Second', priority=2)
        resp = auth_client.put(f"/api/projects/{second['id']}", json={'priority': 1})
        assert resp.get_json()['priority'] == 1
        assert auth_client.get(f"/api/projects/{first['id']}").get_json()['priority'] == 2

    def test_filter_by_customer(self, auth_client, make_customer, make_project):
        a = make_customer(company_name='A Co')
        b = make_customer(company_name='B Co')
        make_project(a['id'], project_name='Deck')
        make_project(b['id'], project_name='Garage')
        rows = auth_client.get(f"/api/projects?customer_id={b['id']}").get_json()
        assert [r['project_name'] for r in rows] == ['Garage']

    def test_delete_blocked_by_estimate(self, auth_client, make_estimate):
        estimate = make_estimate()
        resp = auth_client.delete(f"/api/projects/{estimate['project_id']}")
        assert resp.status_code == 400
        assert '1 estimate(s)' in resp.get_json()['error']

    def test_delete(self, auth_client, make_project):
        project = make_project()
        assert auth_client.delete(f"/api/projects/{project['id']}").status_code == 200
        assert auth_client.get(f"/api/projects/{project['id']}").status_code == 404

    def test_nested_lists(self, auth_client, make_estimate):
        estimate = make_estimate()
        pid = estimate['project_id']
        assert len(auth_client.get(f'/api/projects/{pid}/estimates').get_json()) == 1
        assert auth_client.get(f'/api/projects/{pid}/invoices').get_json() == []
        assert auth_client.get(f'/api/projects/{pid}/contracts').get_json() == []
        assert auth_client.get(f'/api/projects/{pid}/payterms').get_json() == []


def test_dashboard(auth_client, make_invoice):
    make_invoice(due_date='2020-01-01')
    body = auth_client.get('/api/dashboard').get_json()
    assert body['customers'] == 1
    assert body['active_projects'] == 1
    assert body['outstanding_balance'] == 1000.0
    assert body['overdue_invoices'] == 1
    assert body['recent_invoices'][0]['invoice_number'] == 'INV-1150'
